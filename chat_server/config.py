"""
Server configuration read from the environment.
"""

import os
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_SECRET_KEY = "your-secret-key-change-this-in-production"


@dataclass(frozen=True)
class Settings:
    """
    Attributes:
        database_url: SQLAlchemy async database URL
        secret_key: JWT signing key
        algorithm: JWT signing algorithm
        access_token_expire_minutes: Token lifetime
        purge_interval: Seconds between store-wide purge sweeps, 0 disables them
    """
    database_url: str = "sqlite+aiosqlite:///./chat.db"
    secret_key: str = DEFAULT_SECRET_KEY
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24
    purge_interval: float = 60.0

    @classmethod
    def from_env(cls) -> "Settings":
        settings = cls(
            database_url=os.environ.get("VAULTLINE_DATABASE_URL", cls.database_url),
            secret_key=os.environ.get("VAULTLINE_SECRET_KEY", DEFAULT_SECRET_KEY),
            access_token_expire_minutes=int(
                os.environ.get("VAULTLINE_TOKEN_MINUTES", cls.access_token_expire_minutes)
            ),
            purge_interval=float(os.environ.get("VAULTLINE_PURGE_INTERVAL", cls.purge_interval)),
        )
        if settings.secret_key == DEFAULT_SECRET_KEY:
            logger.warning("VAULTLINE_SECRET_KEY not set, using the development signing key")
        return settings


settings = Settings.from_env()
