"""
Configuration centralisée pour l'API FastAPI
Utilise pydantic-settings pour validation et typage fort
"""
from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Configuration de l'application avec validation Pydantic"""

    # Application
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    API_VERSION: str = "v1"
    SECRET_KEY: str
    SESSION_SECRET: str

    # Database
    DATABASE_URL: str

    # Google OAuth (Business Profile)
    GOOGLE_CLIENT_ID: str
    GOOGLE_CLIENT_SECRET: str
    GOOGLE_REDIRECT_URI: str
    GOOGLE_SCOPES: str = (
        "https://www.googleapis.com/auth/business.manage "
        "https://www.googleapis.com/auth/userinfo.email openid"
    )
    OAUTH_STATE_TTL_SECONDS: int = 1800  # 30 minutes

    # Security
    TOKEN_ENCRYPTION_KEY: str
    FERNET_OLD_KEYS: str = ""  # Anciennes clés (rotation), séparées par virgule
    JWT_ISSUER: str = "gmb-sync-api"
    CRON_SECRET: str = ""

    # Cookie settings (cross-site compatibility)
    COOKIE_SAMESITE: str = "lax"  # "none" if dashboard and API on different eTLD+1
    COOKIE_DOMAIN: str = ""

    # CORS
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # Dashboard URL (redirect après OAuth)
    DASHBOARD_URL: str = "http://localhost:3000/accounts"

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse CORS origins"""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    @property
    def google_scopes_list(self) -> List[str]:
        return self.GOOGLE_SCOPES.split()

    # Sync
    SYNC_COOLDOWN_SECONDS: int = 60
    SYNC_COOLDOWN_BACKEND: str = "database"  # "database" (multi-instance) or "memory"
    TOKEN_REFRESH_BUFFER_SECONDS: int = 300  # Refresh 5 min avant expiration
    GOOGLE_PAGE_SIZE: int = 100
    GOOGLE_MAX_RETRIES: int = 3
    UPSERT_BATCH_SIZE: int = 50

    # Cache des locations (process-local)
    LOCATIONS_CACHE_TTL_SECONDS: int = 300
    LOCATIONS_CACHE_MAX_ENTRIES: int = 500

    # Retention
    DEFAULT_RETENTION_DAYS: int = 30

    # Storage (exports) - local ou R2/S3
    STORAGE_MODE: str = "local"  # "local" or "r2"
    LOCAL_DATA_ROOT: str = "./data"
    STORAGE_ENDPOINT: str = ""
    STORAGE_ACCESS_KEY: str = ""
    STORAGE_SECRET_KEY: str = ""
    STORAGE_BUCKET: str = ""
    STORAGE_REGION: str = "auto"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "allow"  # Allow extra fields from .env without failing


# Instance globale
settings = Settings()
