import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./carechat.db")

# Cloudflare R2 Configuration
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "carechat")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

JWT_ALGORITHM = "HS256"

# Frontend base URL (CORS)
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ChatSettings:
    """Chat feature configuration, passed explicitly into the chat services"""

    enabled: bool = False
    signed_url_ttl: int = 900
    allowed_image_mime: tuple[str, ...] = ("image/jpeg", "image/png", "image/webp")
    redact_on_close: bool = True
    broadcast_backend: str = "memory"  # memory | redis
    cleanup_backend: str = "arq"  # arq | local

    @staticmethod
    def parse_mime_list(raw: str) -> tuple[str, ...]:
        """Split a comma-separated MIME list, dropping blanks"""
        return tuple(m.strip().lower() for m in raw.split(",") if m.strip())

    @classmethod
    def from_env(cls) -> "ChatSettings":
        return cls(
            enabled=_env_flag("CHAT_ENABLED", "false"),
            signed_url_ttl=int(os.getenv("CHAT_SIGNED_URL_TTL", "900")),
            allowed_image_mime=cls.parse_mime_list(
                os.getenv("CHAT_ALLOWED_IMAGE_MIME", "image/jpeg,image/png,image/webp")
            ),
            redact_on_close=_env_flag("CHAT_REDACT_MESSAGES", "true"),
            broadcast_backend=os.getenv("CHAT_BROADCAST_BACKEND", "memory").lower(),
            cleanup_backend=os.getenv("CHAT_CLEANUP_BACKEND", "arq").lower(),
        )


@lru_cache
def get_chat_settings() -> ChatSettings:
    """FastAPI dependency returning the process-wide chat settings"""
    return ChatSettings.from_env()
