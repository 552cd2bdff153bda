"""
Configuration module for the Presence Certification Service
Loads environment variables and provides settings
"""
from functools import lru_cache
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_ENV: str = "development"
    APP_DEBUG: bool = False
    API_KEY: str = "internal-api-key"
    PUBLIC_ORIGIN: str = "http://localhost:8000"

    # Database
    DATABASE_URL: str = "sqlite:///./presence_cert.db"

    # Redis (reverse geocode cache)
    REDIS_URL: str = "redis://redis:6379/0"

    # Eligibility envelope (deployment-wide, not per event)
    CERTIFICATION_RADIUS_METERS: float = 500.0
    CERTIFICATION_OPEN_MINUTES_BEFORE_START: int = 0
    POSITION_MAX_AGE_SECONDS: int = 60

    # Flow timing
    POSITION_TIMEOUT_SECONDS: float = 15.0
    CAPTURE_TIMEOUT_SECONDS: float = 20.0
    FLOW_SUCCESS_DELAY_SECONDS: float = 1.5

    # Face match provider (scores are 0-100)
    FACE_MATCH_API_URL: str = "https://verification.didit.me/v2/face-match/"
    FACE_MATCH_API_KEY: str = ""
    FACE_MATCH_THRESHOLD: float = 70.0
    # Range the provider reports scores on: 1 for similarities, 100 for percentages
    FACE_MATCH_SCORE_SCALE: float = 100.0
    FACE_MATCH_TIMEOUT_SEC: int = 30
    IDENTITY_VERIFICATION_MAX_AGE_DAYS: int = 365
    MATCH_PASS_REUSE_SECONDS: int = 900
    SELF_CERT_PASS_REUSE_SECONDS: int = 1800

    # Evidence blob store
    EVIDENCE_STORE_URL: str = "http://storage:5000/storage/v1"
    EVIDENCE_STORE_KEY: str = ""
    EVIDENCE_BUCKET: str = "certification-evidence"
    EVIDENCE_UPLOAD_TIMEOUT_SEC: int = 30

    # QR rendering
    QR_BOX_SIZE: int = 10
    QR_BORDER: int = 4
    QR_LOGO_PATH: Optional[str] = None
    QR_LOGO_MAX_RATIO: float = 0.22

    # Nominatim reverse geocoding
    NOMINATIM_URL: str = "https://nominatim.openstreetmap.org"
    NOMINATIM_USER_AGENT: str = "PresenceCert/1.0 (support@presence-cert.local)"
    NOMINATIM_TIMEOUT_SEC: int = 10
    NOMINATIM_CACHE_TTL_SEC: int = 3600

    class Config:
        env_file = ".env"
        extra = "allow"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
