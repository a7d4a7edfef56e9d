"""
Panel Settings Core - Configuration
"""
from pydantic_settings import BaseSettings
from typing import Optional, List
from functools import lru_cache


class Settings(BaseSettings):
    """Process settings with environment variable support.

    Operator-editable settings (port, MFA, proxy, ...) live in the settings
    table; this class only holds what the process needs before it can open
    the database.
    """

    # App Info
    APP_NAME: str = "Panel Settings Core"
    APP_VERSION: str = "2.0.0"
    DEBUG: bool = False

    # API Settings
    API_PREFIX: str = "/api/v2/core/settings"

    # Database
    DATABASE_URL: str = "sqlite:///./panel.db"
    DATABASE_ECHO: bool = False

    # Secret directory for the panel's own TLS material
    SECRET_DIR: str = "/opt/panel/secret"

    # Security
    SECRET_KEY: str = "CHANGE_THIS_IN_PRODUCTION_USE_OPENSSL_RAND_HEX_32"

    # First-start defaults
    PANEL_NAME: str = "Panel"
    DEFAULT_BIND_ADDRESS: str = "0.0.0.0"
    DEFAULT_SERVER_PORT: int = 10086
    INITIAL_ADMIN_USERNAME: str = "admin"
    INITIAL_ADMIN_PASSWORD: str = "admin@Panel1"

    # Password policy
    PASSWORD_MIN_LENGTH: int = 8
    PASSWORD_MAX_LENGTH: int = 30
    PASSWORD_MIN_CHAR_CLASSES: int = 2  # of: lowercase, uppercase, digits, symbols
    DEFAULT_PASSWORD_EXPIRATION_DAYS: int = 0  # 0 = never expires

    # MFA
    MFA_ACCOUNT: str = "admin"
    MFA_DEFAULT_INTERVAL: int = 30  # seconds
    MFA_VALID_WINDOW: int = 1  # tolerated steps either side of "now"

    # TLS
    TLS_KEY_SIZE: int = 2048
    TLS_CERT_DAYS: int = 3650

    # Listener binding
    MIN_UNPRIVILEGED_PORT: int = 1024
    PERMITTED_PRIVILEGED_PORTS: List[int] = [80, 443]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "allow"  # Allow extra fields from .env file


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
