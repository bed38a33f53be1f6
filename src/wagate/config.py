"""
Gateway configuration.

Defaults live on `GatewayConfig`; every field can be overridden from the
environment (a `.env` file in the project directory is loaded first).
`CONFIG` is the process-wide instance; call `CONFIG.reload()` after changing
the environment.
"""

import os
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

PROJECT_DIR = Path(os.getenv("WAGATE_PROJECT_DIR", Path.cwd())).resolve()
DATA_DIR = Path(os.getenv("WAGATE_DATA_DIR", PROJECT_DIR / ".wagate")).resolve()

# field name -> environment variables checked in order
ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "host": ("WAGATE_HOST",),
    "port": ("WAGATE_PORT", "PORT"),
    "sessions_dir": ("WAGATE_SESSIONS_DIR",),
    "upload_dir": ("WAGATE_UPLOAD_DIR",),
    "max_upload_bytes": ("WAGATE_MAX_UPLOAD_BYTES",),
    "database_url": ("WAGATE_DATABASE_URL", "DATABASE_URL"),
    "bridge_url": ("WAGATE_BRIDGE_URL",),
    "bridge_ws_url": ("WAGATE_BRIDGE_WS_URL",),
    "bridge_timeout": ("WAGATE_BRIDGE_TIMEOUT",),
    "webhook_url": ("WAGATE_WEBHOOK_URL", "WEBHOOK_URL"),
    "reconnect_delay": ("WAGATE_RECONNECT_DELAY",),
    "max_reconnect_attempts": ("WAGATE_MAX_RECONNECT_ATTEMPTS",),
    "restore_sessions": ("WAGATE_RESTORE_SESSIONS",),
    "cors_origins": ("WAGATE_CORS_ORIGINS",),
    "default_country_code": ("WAGATE_DEFAULT_COUNTRY_CODE",),
    "log_level": ("WAGATE_LOG_LEVEL", "LOG_LEVEL"),
    "log_file": ("WAGATE_LOG_FILE", "LOG_FILE"),
}


class GatewayConfig(BaseModel):
    """Runtime settings for the gateway."""

    host: str = "0.0.0.0"
    port: int = 8080

    sessions_dir: Path = DATA_DIR / "sessions"
    upload_dir: Path = DATA_DIR / "uploads"
    max_upload_bytes: int = 10 * 1024 * 1024

    database_url: str = f"sqlite:///{DATA_DIR / 'wagate.db'}"

    # whatsapp-web.js bridge process
    bridge_url: str = "http://localhost:3001"
    bridge_ws_url: Optional[str] = None
    bridge_timeout: float = 60.0

    webhook_url: Optional[str] = None

    reconnect_delay: float = 5.0
    max_reconnect_attempts: int = 3
    restore_sessions: bool = False

    cors_origins: list[str] = Field(
        default_factory=lambda: [
            "http://localhost:4200",
            "http://localhost:3000",
            "http://localhost:8080",
        ]
    )
    default_country_code: str = "92"

    log_level: str = "INFO"
    log_file: Optional[str] = None

    @property
    def effective_bridge_ws_url(self) -> str:
        """WebSocket base URL of the bridge, derived from bridge_url if unset."""
        if self.bridge_ws_url:
            return self.bridge_ws_url.rstrip("/")
        base = self.bridge_url.rstrip("/")
        if base.startswith("https://"):
            return "wss://" + base[len("https://") :]
        if base.startswith("http://"):
            return "ws://" + base[len("http://") :]
        return base

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """Build a config from defaults plus environment overrides."""
        values: dict[str, Any] = {}
        for field_name, env_names in ENV_OVERRIDES.items():
            for env_name in env_names:
                raw = os.getenv(env_name)
                if raw is None or raw == "":
                    continue
                if field_name == "cors_origins":
                    values[field_name] = [o.strip() for o in raw.split(",") if o.strip()]
                else:
                    values[field_name] = raw
                break
        return cls(**values)

    def reload(self) -> None:
        """Re-read the environment and update this instance in place."""
        load_dotenv(PROJECT_DIR / ".env")
        fresh = self.from_env()
        for name in type(self).model_fields:
            setattr(self, name, getattr(fresh, name))

    def ensure_dirs(self) -> None:
        """Create the data directories the gateway writes to."""
        for path in (self.sessions_dir, self.upload_dir):
            Path(path).mkdir(parents=True, exist_ok=True)


load_dotenv(PROJECT_DIR / ".env")
CONFIG = GatewayConfig.from_env()
