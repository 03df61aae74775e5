from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Relative path params in probe commands resolve against this
    project_root: str = ""  # empty = process cwd

    # Storage
    data_dir: str = "data"
    config_dir: str = "config"
    services_file: str = "config/services.json"

    # Public snapshot consumed by the dashboard
    static_dir: str = "static"
    snapshot_path: str = "static/status.json"

    # Probe execution
    exec_timeout_ms: int = 30_000
    kill_grace_ms: int = 2_000
    default_interval_minutes: int = 5

    # Assistant CLI session bootstrap
    assistant_home: str = ""  # empty = ~/.claude
    assistant_template_dir: str = "template"

    # "development" enables CORS + the ad-hoc check endpoint
    environment: str = "production"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 30001

    # Logging
    log_level: str = "INFO"

    @property
    def is_development(self) -> bool:
        return self.environment.strip().lower() == "development"


settings = Settings()
