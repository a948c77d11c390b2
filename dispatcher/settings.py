from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from dispatcher.domain.models import DispatchConfig

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    PROJECT_NAME: str = "Kingslist Dispatcher"

    # Rate limiting / retry policy
    DISPATCH_BASE_DELAY_SECONDS: float = 1.5
    DISPATCH_MAX_DELAY_SECONDS: float = 30.0
    DISPATCH_MAX_ATTEMPTS: int = 3
    DISPATCH_BATCH_SIZE: int = 5
    DISPATCH_EXPONENTIAL_BACKOFF: bool = True
    DISPATCH_SYNC_EVERY_BATCHES: int = 3

    ACTIVITY_LOG_CAPACITY: int = 100

    # Upstream services
    KINGSLIST_API_BASE_URL: str = "https://kingslist.pro/app/default/api"
    KINGSCHAT_API_BASE_URL: str = "https://connect.kingsch.at"
    KINGSCHAT_ACCESS_TOKEN: Optional[str] = None
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # Progress persistence
    PROGRESS_DATABASE_URI: str = "sqlite+aiosqlite:///./dispatch_progress.db"

    def dispatch_config(self) -> DispatchConfig:
        return DispatchConfig(
            base_delay=self.DISPATCH_BASE_DELAY_SECONDS,
            max_delay=self.DISPATCH_MAX_DELAY_SECONDS,
            max_attempts=self.DISPATCH_MAX_ATTEMPTS,
            batch_size=self.DISPATCH_BATCH_SIZE,
            exponential=self.DISPATCH_EXPONENTIAL_BACKOFF,
            sync_every_batches=self.DISPATCH_SYNC_EVERY_BATCHES,
        )

settings = Settings()
