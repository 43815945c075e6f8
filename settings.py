import os
from dataclasses import dataclass
from typing import Optional, Tuple

from blobs import DEFAULT_MAX_UPLOAD_BYTES


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    admin_key: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 3000
    allowed_origins: Tuple[str, ...] = ("*",)
    history_file: str = "messages.json"
    upload_dir: str = "uploads"
    upload_url_prefix: str = "/uploads"
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    require_join_before_submit: bool = True
    presence_enabled: bool = True
    log_level: str = "INFO"
    outbox_size: int = 256

    @property
    def allow_any_origin(self) -> bool:
        return "*" in self.allowed_origins

    def origin_allowed(self, origin: Optional[str]) -> bool:
        # Non-browser clients send no Origin header at all.
        if origin is None or self.allow_any_origin:
            return True
        return origin in self.allowed_origins

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            admin_key=os.getenv("ADMIN_KEY") or None,
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", 3000)),
            allowed_origins=_env_list("ALLOWED_ORIGINS", ("*",)),
            history_file=os.getenv("HISTORY_FILE", "messages.json"),
            upload_dir=os.getenv("UPLOAD_DIR", "uploads"),
            max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES)),
            require_join_before_submit=_env_bool("REQUIRE_JOIN", True),
            presence_enabled=_env_bool("PRESENCE_ENABLED", True),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            outbox_size=int(os.getenv("OUTBOX_SIZE", 256)),
        )
