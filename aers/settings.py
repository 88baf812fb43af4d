"""
Application Settings

Centralized settings loaded from environment variables, with the project
.env file applied first.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# The project root is one level up from the aers package
PROJECT_ROOT = Path(__file__).parent.parent
load_dotenv(PROJECT_ROOT / ".env")


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Settings:
    """
    Usage:
        from aers.settings import settings
        model = settings.MODEL_NAME
    """

    # Generation model
    MODEL_NAME: str = os.getenv("AERS_MODEL_NAME", "mistralai/Mistral-7B-Instruct-v0.2")
    LOAD_IN_4BIT: bool = _flag("AERS_LOAD_IN_4BIT", "true")
    DEVICE: str = os.getenv("AERS_DEVICE", "cuda")
    MAX_NEW_TOKENS: int = int(os.getenv("AERS_MAX_NEW_TOKENS", "1024"))

    # Standardized symptom term lookup
    TERM_LOOKUP_URL: str = os.getenv(
        "AERS_TERM_LOOKUP_URL", "https://meddra-lite-1036646057438.europe-west1.run.app"
    )

    # Storage
    PENDING_DIR: str = os.getenv("AERS_PENDING_DIR", "outputs/pending")
    OUTPUT_DIR: str = os.getenv("AERS_OUTPUT_DIR", "outputs/reports")

    # Web
    SECRET_KEY: str = os.getenv("AERS_SECRET_KEY", "")
    MAX_SESSIONS: int = int(os.getenv("AERS_MAX_SESSIONS", "500"))
    SESSION_IDLE_SECONDS: int = int(os.getenv("AERS_SESSION_IDLE_SECONDS", "3600"))

    LOG_LEVEL: str = os.getenv("AERS_LOG_LEVEL", "INFO").upper()

    @classmethod
    def validate(cls) -> None:
        """Validate settings needed to serve requests"""
        errors = []

        if not cls.SECRET_KEY:
            errors.append("AERS_SECRET_KEY is not set in .env file")
        if cls.DEVICE not in ("cuda", "cpu"):
            errors.append(f"AERS_DEVICE must be 'cuda' or 'cpu', got {cls.DEVICE!r}")
        if cls.MAX_NEW_TOKENS <= 0:
            errors.append("AERS_MAX_NEW_TOKENS must be positive")
        if not cls.TERM_LOOKUP_URL:
            errors.append("AERS_TERM_LOOKUP_URL is not set")
        if cls.MAX_SESSIONS <= 0:
            errors.append("AERS_MAX_SESSIONS must be positive")
        if cls.SESSION_IDLE_SECONDS <= 0:
            errors.append("AERS_SESSION_IDLE_SECONDS must be positive")

        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")


settings = Settings()
