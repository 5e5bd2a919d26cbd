"""
core/config.py
Centralized configuration using environment variables.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base directory
BASE_DIR = Path(__file__).resolve().parent.parent.parent

class Settings:
    # App
    APP_HOST: str = os.getenv("APP_HOST", "0.0.0.0")
    APP_PORT: int = int(os.getenv("APP_PORT", 8000))
    FRONTEND_ORIGIN: str = os.getenv("FRONTEND_ORIGIN", "http://localhost:5173")

    # MongoDB
    MONGO_URI: str = os.getenv("MONGO_URI", "mongodb://localhost:27017")
    MONGO_DB_NAME: str = os.getenv("MONGO_DB_NAME", "cert_issuance")

    # Paths
    UPLOADS_DIR: Path = Path(os.getenv("UPLOADS_DIR", str(BASE_DIR / "uploads")))

    # Batch validation
    MAX_CERTIFICATES: int = int(os.getenv("MAX_CERTIFICATES", 250))
    BATCH_SIZE: int = int(os.getenv("BATCH_SIZE", 50))
    PROCESSING_TIME_PER_CERT: float = float(os.getenv("PROCESSING_TIME_PER_CERT", 0.1))  # minutes
    MANIFEST_COLUMN_MATCH: str = os.getenv("MANIFEST_COLUMN_MATCH", "substring")  # substring | exact

    # Issuance
    PROCESSING_DELAY_MODE: str = os.getenv("PROCESSING_DELAY_MODE", "random")  # random | fixed | none
    PROCESSING_DELAY_MIN_SECONDS: float = float(os.getenv("PROCESSING_DELAY_MIN_SECONDS", 0.5))
    PROCESSING_DELAY_MAX_SECONDS: float = float(os.getenv("PROCESSING_DELAY_MAX_SECONDS", 2.0))
    RETRY_DELAY_SECONDS: float = float(os.getenv("RETRY_DELAY_SECONDS", 1.0))
    STALE_BATCH_MINUTES: int = int(os.getenv("STALE_BATCH_MINUTES", 30))

    # QR code
    VERIFICATION_BASE_URL: str = os.getenv("VERIFICATION_BASE_URL", "https://verify.example.com")
    QR_SIZE_POINTS: float = float(os.getenv("QR_SIZE_POINTS", 50))
    QR_PIXEL_SIZE: int = int(os.getenv("QR_PIXEL_SIZE", 100))

settings = Settings()

# Ensure directories exist
settings.UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
