from typing import Annotated

from fastapi import Depends, Request

from dispatcher.services.dispatch_service import DispatchService

def get_dispatch_service(request: Request) -> DispatchService:
    return request.app.state.dispatch_service

# Dependency for the dispatch service wired in the app lifespan
DispatchServiceDep = Annotated[DispatchService, Depends(get_dispatch_service)]
