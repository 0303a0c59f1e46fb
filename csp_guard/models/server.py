"""Pydantic models for development-server options and the runtime payload."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_PORT = 4200
DEFAULT_LIVE_RELOAD_PORT = 7020


class ServerOptions(BaseModel):
    """Options of the serving process that affect the delivered policy."""

    model_config = ConfigDict(frozen=True)

    host: str | None = None
    port: int = Field(DEFAULT_PORT, ge=1, le=65535)
    ssl: bool = False
    live_reload: bool = False
    live_reload_host: str | None = None
    live_reload_port: int = Field(DEFAULT_LIVE_RELOAD_PORT, ge=1, le=65535)


class RuntimePolicy(BaseModel):
    """Minimal data a server-rendering host needs to set the CSP header."""

    model_config = ConfigDict(populate_by_name=True)

    policy: str
    report_only: bool = Field(False, alias="reportOnly")
