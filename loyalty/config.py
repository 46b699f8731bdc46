"""
Application settings
"""
from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./data/loyalty.db"

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # File storage
    DATA_DIR: str = "./data"
    UPLOAD_DIR: str = "./data/uploads"
    UNKNOWN_STORE_BUCKET: str = "unknown"

    # OCR (PaddleOCR service)
    PADDLEOCR_URL: str = "http://localhost:8866"
    PADDLEOCR_ENDPOINT: str = "/predict/ocr_system"
    PADDLEOCR_TIMEOUT: float = 30.0
    PADDLEOCR_HEALTH_TIMEOUT: float = 3.0
    OCR_MAX_WIDTH: int = 800

    # Rule settings cache
    SETTINGS_CACHE_TTL_SECONDS: int = 300

    # Rewards
    REWARD_CODE_PREFIX: str = "LEWIS"

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
