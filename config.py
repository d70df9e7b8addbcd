from pydantic_settings import BaseSettings
from typing import Optional

class Settings(BaseSettings):
    # API Configuration
    API_TITLE: str = "Identity Verification Orchestrator"
    API_VERSION: str = "1.0.0"
    DEBUG: bool = False
    API_KEY: str = ""

    # Logging
    LOG_DIR: str = "logs"
    LOG_LEVEL: str = "INFO"

    # Database
    MONGODB_URL: str = "mongodb+srv://localhost:27017"
    DATABASE_NAME: str = "identity_verification_db"
    MONGODB_TLS: bool = True

    # Innovatrics Configuration
    INNOVATRICS_BASE_URL: str = "https://dot.innovatrics.com/identity/api/v1"
    INNOVATRICS_BEARER_TOKEN: str = ""
    INNOVATRICS_HOST: Optional[str] = "dot.innovatrics.com"
    REQUEST_TIMEOUT: int = 60

    # Retry Settings
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_INITIAL_DELAY: float = 0.5
    RETRY_MAX_DELAY: float = 4.0
    RETRY_BACKOFF_FACTOR: float = 2.0

    # Verification Settings
    FACE_MATCH_THRESHOLD: float = 0.64
    FACE_MASK_THRESHOLD: float = 0.5
    LIVENESS_MODE: str = "mask_heuristic"  # mask_heuristic or challenge
    HEURISTIC_LIVENESS_CONFIDENCE: float = 0.9
    DEEPFAKE_CHECK: bool = True

    # Image Archive (S3); empty bucket disables archival
    S3_BUCKET: str = ""
    S3_PREFIX: str = "verification-images"
    AWS_REGION: str = "us-east-1"
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None

    # Event Settings
    EVENT_RELAY_URL: Optional[str] = None
    EMBED_OUTCOME_IN_DECLINE: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
