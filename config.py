import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from database import DB_PATH


@dataclass
class Settings:
    """Налаштування бота. Значення беруться зі змінних оточення (.env)."""
    bot_token: Optional[str] = None
    backend: str = "supabase"              # supabase | local
    supabase_url: str = ""
    supabase_key: str = ""
    db_path: str = DB_PATH
    media_dir: str = "media"
    media_base_url: str = "http://localhost:8000/media"
    login_url: str = "https://exchangezo.app/login"
    site_url: str = "https://exchangezo.app"
    max_images: int = 5
    max_image_mb: int = 5
    request_timeout: int = 30
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        load_dotenv(dotenv_path=env_file)
        defaults = cls()
        backend = os.getenv("BACKEND", defaults.backend).strip().lower()
        if backend not in ("supabase", "local"):
            raise ValueError(f"BACKEND має бути 'supabase' або 'local', отримано: {backend}")
        return cls(
            bot_token=os.getenv("BOT_TOKEN"),
            backend=backend,
            supabase_url=os.getenv("SUPABASE_URL", ""),
            supabase_key=os.getenv("SUPABASE_ANON_KEY", ""),
            db_path=os.getenv("DB_PATH", defaults.db_path),
            media_dir=os.getenv("MEDIA_DIR", defaults.media_dir),
            media_base_url=os.getenv("MEDIA_BASE_URL", defaults.media_base_url),
            login_url=os.getenv("LOGIN_URL", defaults.login_url),
            site_url=os.getenv("SITE_URL", defaults.site_url),
            max_images=int(os.getenv("MAX_IMAGES", defaults.max_images)),
            max_image_mb=int(os.getenv("MAX_IMAGE_MB", defaults.max_image_mb)),
            request_timeout=int(os.getenv("REQUEST_TIMEOUT", defaults.request_timeout)),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
        )
