from pathlib import Path
from typing import List

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logger import get_logger


_EXPORT_FORMATS = {"png", "jpeg", "webp"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field("dev", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Same-origin proxy used when a direct fetch fails: GET <proxy>?url=<target>
    image_proxy_url: str = Field("", alias="IMAGE_PROXY_URL")
    proxy_allowed_hosts_raw: str = Field("", alias="PROXY_ALLOWED_HOSTS")
    fetch_timeout_seconds: float = Field(default=15.0, alias="FETCH_TIMEOUT_SECONDS")
    fetch_retries: int = Field(default=1, alias="FETCH_RETRIES")
    fetch_max_bytes: int = Field(default=10 * 1024 * 1024, alias="FETCH_MAX_BYTES")

    export_scale: int = Field(default=2, alias="EXPORT_SCALE")
    export_format: str = Field("png", alias="EXPORT_FORMAT")
    jpeg_quality: int = Field(default=92, alias="JPEG_QUALITY")
    download_dir: Path = Field(default=Path("exports"), alias="DOWNLOAD_DIR")

    default_font_family: str = Field("Bebas Neue", alias="DEFAULT_FONT_FAMILY")
    background_coverage_threshold: float = Field(default=0.9, alias="BACKGROUND_COVERAGE_THRESHOLD")
    markup_fallback_enabled: bool = Field(default=True, alias="MARKUP_FALLBACK_ENABLED")
    markup_render_timeout_ms: int = Field(default=5000, alias="MARKUP_RENDER_TIMEOUT_MS")
    text_layer_failure_fatal: bool = Field(default=False, alias="TEXT_LAYER_FAILURE_FATAL")

    telegram_bot_token: str = Field("", alias="TELEGRAM_BOT_TOKEN")
    share_chat_id: str = Field("", alias="SHARE_CHAT_ID")

    @model_validator(mode="after")
    def validate_proxy(self):
        if not (self.image_proxy_url or "").strip():
            logger = get_logger("settings")
            logger.warning("IMAGE_PROXY_URL is not configured; cross-origin fetches have no fallback")
        return self

    @model_validator(mode="after")
    def validate_export_format(self):
        fmt = (self.export_format or "").strip().lower()
        if fmt == "jpg":
            fmt = "jpeg"
        if fmt not in _EXPORT_FORMATS:
            raise ValueError(f"EXPORT_FORMAT must be one of {sorted(_EXPORT_FORMATS)}, got {self.export_format!r}")
        self.export_format = fmt
        return self

    @property
    def proxy_allowed_hosts(self) -> List[str]:
        return [x.strip().lower() for x in self.proxy_allowed_hosts_raw.split(",") if x.strip()]

    @property
    def share_chat(self) -> int | None:
        raw = (self.share_chat_id or "").strip()
        if not raw:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    @property
    def share_enabled(self) -> bool:
        return bool((self.telegram_bot_token or "").strip()) and self.share_chat is not None


default_settings = Settings()
settings = default_settings
