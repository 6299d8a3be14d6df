"""
Configuration for the LunaChat server.

All settings come from environment variables with the LUNACHAT_ prefix,
e.g. LUNACHAT_PORT=9000. The storage directory is not a
setting: the server always uses the relative directory `db`.
"""

import secrets
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

PACKAGE_DIR = Path(__file__).parent


class Settings(BaseSettings):
    """Server configuration."""

    # HTTP listener
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8002)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="text", description="text or json")

    # Sessions are signed with this key; a random key logs everyone out on restart
    session_secret: str = Field(default_factory=lambda: secrets.token_urlsafe(32))
    session_max_age: int = Field(default=14 * 24 * 3600, description="Session cookie lifetime (s)")

    # Server-Sent Events
    sse_keep_alive_seconds: float = Field(default=1.0, gt=0)

    # Static files and templates
    static_dir: Path = Field(default=PACKAGE_DIR / "static")
    templates_dir: Path = Field(default=PACKAGE_DIR / "templates")

    model_config = {"env_prefix": "LUNACHAT_"}
