# Logging adapter for application-wide logging
from txretry.adapters.logging_adapter import LoggingAdapter

from typing import Literal, Optional

from pydantic import PositiveInt, SecretStr, computed_field
from pydantic_settings import BaseSettings
from rich import print

from txretry.core.interfaces.logging import LoggingPort

# using pydantic_settings to manage environment variables
# and do automatic type casting in a central place
class TxRetrySettings(BaseSettings):
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore"  # ignore unrelated environment variables
    }
    TXRETRY_LOG_LEVEL: str = "INFO"

    # Backoff / budget (see core.config.BackoffConfig)
    TXRETRY_MAX_ATTEMPTS: PositiveInt = 15
    TXRETRY_BASE_DELAY: float = 0.05  # seconds
    TXRETRY_MULTIPLIER: float = 2.0
    TXRETRY_JITTER_FACTOR: float = 0.5
    TXRETRY_MAX_DELAY: float = 5.0  # seconds
    TXRETRY_MAX_ELAPSED: Optional[float] = None  # seconds
    TXRETRY_MAX_BROKEN_ATTEMPTS: Optional[PositiveInt] = None

    # Database (CockroachDB speaks the PostgreSQL wire protocol)
    TXRETRY_DATABASE_HOST: str = "localhost"
    TXRETRY_DATABASE_PORT: int = 26257
    TXRETRY_DATABASE_NAME: str = "defaultdb"
    TXRETRY_DATABASE_USER: str = "root"
    TXRETRY_DATABASE_PASSWORD: SecretStr = SecretStr("")
    TXRETRY_DATABASE_SSLMODE: str = "disable"
    TXRETRY_POOL_SIZE: PositiveInt = 10
    TXRETRY_POOL_TIMEOUT: float = 30.0  # seconds waiting for a pooled connection

    # Hot-account scenario
    TXRETRY_SCENARIO_BACKEND: Literal["memory", "database", "psycopg2"] = "memory"
    TXRETRY_SCENARIO_DEPOSITS: PositiveInt = 10
    TXRETRY_SCENARIO_AMOUNT: str = "75.00"

    @computed_field
    @property
    def TXRETRY_DATABASE_URL(self) -> str:
        """SQLAlchemy URL for the psycopg2 driver"""
        password = self.TXRETRY_DATABASE_PASSWORD.get_secret_value()
        credentials = self.TXRETRY_DATABASE_USER + (f":{password}" if password else "")
        return (
            f"postgresql+psycopg2://{credentials}"
            f"@{self.TXRETRY_DATABASE_HOST}:{self.TXRETRY_DATABASE_PORT}"
            f"/{self.TXRETRY_DATABASE_NAME}?sslmode={self.TXRETRY_DATABASE_SSLMODE}"
        )

    def print_settings(self, logger: LoggingPort):
        """Prints the settings for debugging purposes"""
        logger.info("txretry settings:")
        print(self.model_dump(exclude={"TXRETRY_DATABASE_URL"}))


app_settings = TxRetrySettings()

logger = LoggingAdapter("txretry", app_settings.TXRETRY_LOG_LEVEL)
