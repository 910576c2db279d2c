from pydantic_settings import BaseSettings
from decouple import config
from typing import Literal

class Settings(BaseSettings):
    PROJECT_NAME: str = "MSA Inventory"
    DEBUG: bool = config("DEBUG", default=False, cast=bool)
    LOG_FILE: str = config("LOG_FILE", default="msa_inventory.log")

    # Storage backend: "json" (flat files) or "mongodb"
    STORAGE_MODE: Literal["json", "mongodb"] = config("STORAGE_MODE", default="json")
    DATA_DIR: str = config("DATA_DIR", default="storage/data")
    MONGO_CONNECTION_STRING: str = config("MONGO_CONNECTION_STRING", default="mongodb://localhost:27017")
    MONGO_DATABASE: str = config("MONGO_DATABASE", default="msa_inventory")
    STORAGE_TIMEOUT_SECONDS: float = config("STORAGE_TIMEOUT_SECONDS", default=10.0, cast=float)
    LOCK_TIMEOUT_SECONDS: float = config("LOCK_TIMEOUT_SECONDS", default=30.0, cast=float)

    # Penalties
    LATE_FEE_DAILY_RATE: float = config("LATE_FEE_DAILY_RATE", default=5.0, cast=float)
    LATE_FEE_CURRENCY: str = config("LATE_FEE_CURRENCY", default="USD")

    # Checkout policy
    REQUIRE_STORAGE_PHOTO: bool = config("REQUIRE_STORAGE_PHOTO", default=False, cast=bool)

    # Background sweeps
    OVERDUE_SWEEP_INTERVAL_SECONDS: float = config("OVERDUE_SWEEP_INTERVAL_SECONDS", default=86400.0, cast=float)
    DUE_SOON_SWEEP_INTERVAL_SECONDS: float = config("DUE_SOON_SWEEP_INTERVAL_SECONDS", default=86400.0, cast=float)
    DUE_SOON_WINDOW_HOURS: int = config("DUE_SOON_WINDOW_HOURS", default=24, cast=int)

    class Config:
        case_sensitive = True

settings = Settings()
