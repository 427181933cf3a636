from functools import lru_cache
from typing import Any
import os

import yaml
from pydantic import BaseModel, ConfigDict


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    database_url: str = os.getenv("DATABASE_URL", "sqlite:///" + os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "panel.sqlite3")))
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    server_psk: str = os.getenv("SERVER_PSK", "")
    # UI auth (single user)
    ui_user: str = os.getenv("UI_USER", "")
    ui_password: str = os.getenv("UI_PASSWORD", "")
    ui_password_hash: str | None = os.getenv("UI_PASSWORD_HASH")
    jwt_secret: str = os.getenv("JWT_SECRET", "")

    # AWS control plane; credentials fall back to the boto3 default chain
    aws_region: str = os.getenv("AWS_REGION", "us-east-1")
    aws_access_key_id: str | None = os.getenv("AWS_ACCESS_KEY_ID")
    aws_secret_access_key: str | None = os.getenv("AWS_SECRET_ACCESS_KEY")
    analytics_bucket: str = os.getenv("ANALYTICS_BUCKET", "monitor-agent-logs")

    # Monitoring agent on the customer host
    agent_api_port: int = int(os.getenv("AGENT_API_PORT", "9811"))
    agent_service_name: str = os.getenv("AGENT_SERVICE_NAME", "monitor-agent")
    agent_binary_path: str = os.getenv("AGENT_BINARY_PATH", "/opt/monitor-agent/monitor-agent")
    agent_install_url: str = os.getenv("AGENT_INSTALL_URL", "https://downloads.example.com/monitor-agent/install.sh")
    agent_uninstall_url: str = os.getenv("AGENT_UNINSTALL_URL", "https://downloads.example.com/monitor-agent/uninstall.sh")
    agent_address_override: str | None = os.getenv("AGENT_ADDRESS_OVERRIDE")

    # Timing budgets (seconds unless noted)
    probe_timeout: float = 2.0
    aws_call_timeout: float = 10.0
    fetch_timeout: float = 30.0
    status_probe_wait: float = 2.0
    command_poll_interval: float = 3.0
    command_poll_attempts: int = 200
    command_poll_deadline: float = 900.0  # wall clock for one command, on top of the attempt cap
    status_poll_interval: float = 5.0
    status_poll_attempts: int = 12
    install_grace_period: float = 3.0
    start_grace_period: float = 2.0
    liveness_window_seconds: int = int(os.getenv("LIVENESS_WINDOW_SECONDS", "300"))
    heartbeat_retention_days: int = 7
    maintenance_interval: float = 3600.0
    analytics_window_hours: int = 24
    top_n: int = 10


def load_settings(path: str | None = None) -> Settings:
    """Build settings from the environment, overlaid by an optional YAML file."""
    path = path or os.environ.get("PANEL_CONFIG")
    if not path:
        return Settings()
    with open(path, "r", encoding="utf-8") as f:
        data: dict[str, Any] = yaml.safe_load(f) or {}
    return Settings(**data)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
