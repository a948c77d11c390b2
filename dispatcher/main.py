import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from dispatcher.settings import settings
from dispatcher.api.v1.dispatches import router as dispatches_router, activity_router
from dispatcher.api.v1.metrics import router as metrics_router
from dispatcher.services.dispatch_service import DispatchService

logger = logging.getLogger(__name__)

def create_app(service: Optional[DispatchService] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if service is not None:
            app.state.dispatch_service = service
            yield
            await service.shutdown()
            return

        # Startup
        from dispatcher.engine.dispatch import DispatchEngine
        from dispatcher.services.activity_log import ActivityLog
        from dispatcher.services.status_reporter import StatusReporter
        from dispatcher.store.backends import SqlAlchemyBackend
        from dispatcher.store.progress import ProgressStore
        from kingslist_sdk import DispatchApiClient, KingsChatSender

        # 1. Progress store
        backend = SqlAlchemyBackend(settings.PROGRESS_DATABASE_URI)
        await backend.init()
        store = ProgressStore(backend)

        # 2. Upstream API (batch source + status endpoint)
        api_client = DispatchApiClient(settings.KINGSLIST_API_BASE_URL, timeout=settings.HTTP_TIMEOUT_SECONDS)

        def make_sender(access_token: str) -> KingsChatSender:
            return KingsChatSender(
                access_token,
                base_url=settings.KINGSCHAT_API_BASE_URL,
                timeout=settings.HTTP_TIMEOUT_SECONDS,
            )

        # 3. Engine
        engine = DispatchEngine(
            store=store,
            reporter=StatusReporter(api_client),
            activity=ActivityLog(settings.ACTIVITY_LOG_CAPACITY),
        )
        app.state.dispatch_service = DispatchService(
            engine=engine,
            store=store,
            batch_source=api_client,
            sender_factory=make_sender,
            config=settings.dispatch_config(),
            default_access_token=settings.KINGSCHAT_ACCESS_TOKEN,
        )
        logger.info("Dispatch service ready.")

        yield

        # Shutdown. Interrupted runs keep a non-terminal marker and can be resumed.
        await app.state.dispatch_service.shutdown()
        await api_client.close()
        await backend.close()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan
    )
    if service is not None:
        app.state.dispatch_service = service

    app.include_router(dispatches_router, prefix="/api/v1/dispatches", tags=["dispatches"])
    app.include_router(activity_router, prefix="/api/v1/activity", tags=["activity"])
    app.include_router(metrics_router, tags=["metrics"])

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app

app = create_app()
