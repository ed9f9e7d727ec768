"""
Application configuration. Loads from environment variables.
Secrets and sensitive config must never be hardcoded.
"""

import os

from dotenv import load_dotenv

load_dotenv()
from functools import lru_cache


@lru_cache(maxsize=1)
def get_settings() -> "Settings":
    """Return cached settings instance."""
    return Settings()


class Settings:
    """Application settings loaded from environment."""

    # App
    app_name: str = "incident-remediation-core"
    debug: bool = False

    # Database (postgresql+psycopg for psycopg3; sqlite URLs are accepted for local runs)
    database_url: str = "postgresql+psycopg://localhost:5432/incident_core_dev"
    db_connect_timeout: int = 10  # seconds

    # Governance: path to the active lawbook YAML. Empty = not configured (deny-by-default).
    lawbook_path: str = ""

    # Reported on stop decisions; canonicalized by app.governance.environment
    deploy_env: str = "staging"

    # Upper bound handed to ECS stability polls by service-health-reset
    remediation_max_wait_seconds: int = 300

    def __init__(self) -> None:
        self.app_name = os.getenv("APP_NAME", self.app_name)
        self.debug = os.getenv("DEBUG", "false").lower() == "true"

        default_user = os.getenv("PGUSER") or os.getenv("USER") or "postgres"
        default_url = (
            f"postgresql+psycopg://{default_user}:"
            f"{os.getenv('PGPASSWORD', '')}@"
            f"{os.getenv('PGHOST', 'localhost')}:"
            f"{os.getenv('PGPORT', '5432')}/"
            f"{os.getenv('PGDATABASE', 'incident_core_dev')}"
        )
        raw_url = os.getenv("DATABASE_URL", default_url)
        # Ensure psycopg3 driver if URL uses generic postgresql://
        if raw_url.startswith("postgresql://") and not raw_url.startswith("postgresql+psycopg"):
            raw_url = raw_url.replace("postgresql://", "postgresql+psycopg://", 1)
        self.database_url = raw_url
        self.db_connect_timeout = int(os.getenv("DB_CONNECT_TIMEOUT", str(self.db_connect_timeout)))

        self.lawbook_path = os.getenv("LAWBOOK_PATH", "").strip()
        self.deploy_env = os.getenv("DEPLOY_ENV", self.deploy_env).strip()
        self.remediation_max_wait_seconds = int(
            os.getenv(
                "REMEDIATION_MAX_WAIT_SECONDS",
                str(self.remediation_max_wait_seconds),
            )
        )
