import os

from pydantic import BaseModel


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# --- Configuration ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8080"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
MAX_BODY_BYTES = int(os.getenv("MAX_BODY_BYTES", str(10 * 1024 * 1024)))
FETCH_TIMEOUT_SECONDS = float(os.getenv("FETCH_TIMEOUT_SECONDS", "5"))
MAX_ASSET_BYTES = int(os.getenv("MAX_ASSET_BYTES", str(10 * 1024 * 1024)))
DEBUG = _env_flag("DEBUG")
DEFAULT_FILENAME = os.getenv("DEFAULT_FILENAME", "presentation.pptx")


class Settings(BaseModel):
    """Process-wide settings handed to each build."""
    max_body_bytes: int = MAX_BODY_BYTES
    fetch_timeout_seconds: float = FETCH_TIMEOUT_SECONDS
    max_asset_bytes: int = MAX_ASSET_BYTES
    debug: bool = DEBUG
    default_filename: str = DEFAULT_FILENAME


def get_settings() -> Settings:
    return Settings()
