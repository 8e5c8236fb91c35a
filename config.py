"""
Environment-driven configuration for the continuation server.

Values are read from the process environment (optionally seeded from a
``.env`` file through ``python-dotenv``) into a single ``Settings`` object.
The application factory in ``main.py`` builds one ``Settings`` at startup and
hands it to every component that needs it, so tests can construct their own
instance instead of patching the environment.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

BASE_DIR = Path(__file__).resolve().parent


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


@dataclass
class Settings:
    """Runtime settings for the server and its upstream client."""

    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o"
    openai_base_url: str = "https://api.openai.com/v1"
    gemini_api_key: Optional[str] = None
    kieai_api_key: Optional[str] = None
    app_env: str = "production"
    port: int = 3001
    build_dir: Path = field(default_factory=lambda: BASE_DIR / "build")
    max_body_bytes: int = 10 * 1024 * 1024
    # The sync handler waits slightly longer than the upstream client so the
    # provider's own timeout surfaces first.
    sync_timeout: float = 95.0
    upstream_timeout: float = 90.0
    task_cleanup_delay: float = 5.0
    max_concurrent_generations: int = 4
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o"),
            openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            gemini_api_key=os.getenv("GOOGLE_GEMINI_API_KEY") or None,
            kieai_api_key=os.getenv("KIEAI_API_KEY") or None,
            app_env=os.getenv("APP_ENV", "production"),
            port=_env_int("PORT", 3001),
            build_dir=Path(os.getenv("BUILD_DIR", str(BASE_DIR / "build"))),
            max_body_bytes=_env_int("MAX_BODY_BYTES", 10 * 1024 * 1024),
            sync_timeout=_env_float("SYNC_TIMEOUT", 95.0),
            upstream_timeout=_env_float("UPSTREAM_TIMEOUT", 90.0),
            task_cleanup_delay=_env_float("TASK_CLEANUP_DELAY", 5.0),
            max_concurrent_generations=_env_int("MAX_CONCURRENT_GENERATIONS", 4),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() == "development"

    def env_flags(self) -> dict:
        """Configuration presence flags surfaced by health and debug output."""
        return {
            "hasOpenAI": bool(self.openai_api_key),
            "hasGemini": bool(self.gemini_api_key),
            "hasKieAI": bool(self.kieai_api_key),
        }
