from pydantic_settings import BaseSettings
from typing import Optional
from pathlib import Path

# Project root (parent of the circulation package)
BACKEND_DIR = Path(__file__).parent.parent
ENV_FILE = BACKEND_DIR / ".env"

class Settings(BaseSettings):
    # Server settings
    host: str = "0.0.0.0"
    port: int = 3000

    # Database settings - either a full URL or PostgreSQL parts from .env
    database_url: Optional[str] = None  # e.g. sqlite:///./circulation.db
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: Optional[str] = None
    db_user: Optional[str] = None
    db_password: Optional[str] = None  # Confidential, no default

    # Database SSL settings (PostgreSQL only)
    db_ssl_mode: str = "prefer"  # Options: disable, allow, prefer, require, verify-ca, verify-full
    db_ssl_cert: Optional[str] = None
    db_ssl_key: Optional[str] = None
    db_ssl_root_cert: Optional[str] = None

    # Timezone used when presenting dates to members
    library_timezone: str = "UTC"

    # Overdue sweeper
    sweeper_max_workers: int = 1  # Loans processed in parallel per sweep

    # MQTT event publishing (notification dispatcher hook)
    mqtt_enabled: bool = False
    mqtt_broker: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None  # Confidential
    mqtt_event_topic_prefix: str = "library/loans"

    # MQTT TLS/SSL settings
    mqtt_use_tls: bool = False
    mqtt_tls_insecure: bool = False  # Allow self-signed broker certs, not for production
    mqtt_ca_cert: Optional[str] = None  # Path to CA certificate file
    mqtt_client_cert: Optional[str] = None  # Path to client certificate file (mutual TLS)
    mqtt_client_key: Optional[str] = None  # Path to client private key file (mutual TLS)

    class Config:
        env_file = str(ENV_FILE) if ENV_FILE.exists() else ".env"
        case_sensitive = False

settings = Settings()
