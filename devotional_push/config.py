from __future__ import annotations

import os
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

load_dotenv()


class Settings(BaseModel):
    SUBSCRIBERS_DB_PATH: str = Field(default="subscribers.db")
    VAPID_PUBLIC_KEY: Optional[str] = Field(default=None)
    VAPID_PRIVATE_KEY: Optional[str] = Field(default=None)
    VAPID_CLAIM_EMAIL: str = Field(default="contacto@misionvida.com")
    PUSH_TTL_SECONDS: int = Field(default=86400)
    PUSH_TIMEOUT_SECONDS: float = Field(default=10.0)
    DEVOTIONAL_SOURCE_URL: str = Field(
        default="https://www.bibliaon.com/es/palabra_del_dia/"
    )
    DEVOTIONAL_DEFAULT_TITLE: str = Field(default="Palabra del Día")
    CONTENT_TIMEOUT_SECONDS: float = Field(default=15.0)
    NOTIFICATION_ICON: str = Field(default="/icon-192x192.png")
    NOTIFICATION_URL: str = Field(default="/")
    NOTIFICATION_BODY_MAX_CHARS: int = Field(default=120)
    SEND_WELCOME_NOTIFICATION: bool = Field(default=True)
    WELCOME_TITLE: str = Field(default="✅ Notificaciones Activadas")
    WELCOME_BODY: str = Field(default="Recibirás la Palabra del Día cada mañana")
    BROADCAST_CONCURRENCY: int = Field(default=16)
    BROADCAST_ENABLED: bool = Field(default=False)
    BROADCAST_INTERVAL_SECONDS: int = Field(default=86400)
    BROADCAST_JITTER_SECONDS: int = Field(default=60)
    BROADCAST_BACKOFF_MAX_SECONDS: int = Field(default=3600)
    CORS_ALLOW_ORIGINS: str = Field(
        default="https://mision-vida-app.web.app,http://127.0.0.1:5501,http://localhost:5501",
        description="comma-separated origins",
    )
    LOG_LEVEL: str = Field(default="INFO")


def _load_settings(existing: Settings | None = None) -> Settings:
    values: dict[str, Any] = {}
    for name, field in Settings.model_fields.items():
        env_value = os.getenv(name)
        if env_value is None:
            if existing is not None and hasattr(existing, name):
                values[name] = getattr(existing, name)
                continue
            values[name] = field.get_default(call_default_factory=True)
        else:
            values[name] = env_value

    try:
        return Settings(**values)
    except ValidationError as exc:
        invalid = [str(error["loc"][0]) for error in exc.errors() if error.get("loc")]
        joined = ", ".join(sorted(set(invalid)))
        raise RuntimeError(f"Invalid environment variables: {joined}") from exc


settings = _load_settings()


def reload_settings() -> Settings:
    global settings
    fresh = _load_settings(settings)
    settings.__dict__.update(fresh.__dict__)
    return settings


def allowed_origins() -> list[str]:
    return [o.strip() for o in settings.CORS_ALLOW_ORIGINS.split(",") if o.strip()]
