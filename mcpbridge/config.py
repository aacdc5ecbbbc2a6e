import os
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load .env if present
load_dotenv()


class Settings(BaseModel):
    database_url: str
    upstream_timeout: float = 30.0
    retry_attempts: int = 2
    retry_backoff_base: float = 0.5
    rate_window_seconds: int = 60
    demo_account_emails: List[str] = ["demo@contextlayer.app"]
    token_prefix: str = Field(default="mcp", pattern=r"^[a-z]+$")
    audit_batch_size: int = 10
    audit_flush_interval: float = 5.0
    log_level: str = "INFO"
    mcp_protocol_version: str = "2024-11-05"
    openapi_fetch_timeout: float = 15.0


def _parse_list(value: str) -> List[str]:
    return [item.strip().lower() for item in value.split(",") if item.strip()]


settings = Settings(
    database_url=os.getenv("DATABASE_URL", "sqlite:///./mcpbridge.db"),
    upstream_timeout=float(os.getenv("UPSTREAM_TIMEOUT", "30")),
    retry_attempts=int(os.getenv("RETRY_ATTEMPTS", "2")),
    retry_backoff_base=float(os.getenv("RETRY_BACKOFF_BASE", "0.5")),
    rate_window_seconds=int(os.getenv("RATE_WINDOW_SECONDS", "60")),
    demo_account_emails=_parse_list(os.getenv("DEMO_ACCOUNT_EMAILS", "demo@contextlayer.app")),
    token_prefix=os.getenv("TOKEN_PREFIX", "mcp"),
    audit_batch_size=int(os.getenv("AUDIT_BATCH_SIZE", "10")),
    audit_flush_interval=float(os.getenv("AUDIT_FLUSH_INTERVAL", "5")),
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    mcp_protocol_version=os.getenv("MCP_PROTOCOL_VERSION", "2024-11-05"),
    openapi_fetch_timeout=float(os.getenv("OPENAPI_FETCH_TIMEOUT", "15")),
)
