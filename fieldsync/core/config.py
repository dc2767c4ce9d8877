import os
from functools import lru_cache
from pathlib import Path
from typing import List

from dotenv import load_dotenv

load_dotenv()


class Settings:
    def __init__(self) -> None:
        base_dir = Path(__file__).resolve().parent.parent.parent
        self.APP_NAME: str = os.getenv("APP_NAME", "FieldSync API")
        self.ENV: str = os.getenv("ENV", "development")
        self.SQLALCHEMY_DATABASE_URI: str = os.getenv(
            "SQLALCHEMY_DATABASE_URI",
            f"sqlite:///{(base_dir / 'fieldsync.db').as_posix()}",
        )

        self.KIZEO_API_URL: str = os.getenv("KIZEO_API_URL", "https://www.kizeoforms.com/rest/v3").rstrip("/")
        self.KIZEO_API_TOKEN: str = os.getenv("KIZEO_API_TOKEN", "")
        self.KIZEO_TIMEOUT_SECONDS: int = int(os.getenv("KIZEO_TIMEOUT_SECONDS", "30"))
        self.KIZEO_PDF_TIMEOUT_SECONDS: int = int(os.getenv("KIZEO_PDF_TIMEOUT_SECONDS", "60"))

        self.JOBS_DRAIN_LIMIT: int = int(os.getenv("JOBS_DRAIN_LIMIT", "200"))
        self.JOBS_CHUNK_SIZE: int = int(os.getenv("JOBS_CHUNK_SIZE", "20"))
        self.JOBS_API_DELAY_MS: int = int(os.getenv("JOBS_API_DELAY_MS", "100"))
        self.JOBS_STUCK_THRESHOLD_MINUTES: int = int(os.getenv("JOBS_STUCK_THRESHOLD_MINUTES", "60"))
        self.JOBS_PURGE_DONE_DAYS: int = int(os.getenv("JOBS_PURGE_DONE_DAYS", "14"))
        self.JOBS_PURGE_FAILED_DAYS: int = int(os.getenv("JOBS_PURGE_FAILED_DAYS", "30"))
        self.JOBS_RETRY_WARN_ATTEMPTS: int = int(os.getenv("JOBS_RETRY_WARN_ATTEMPTS", "3"))

        default_cors = [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:5173",
        ]
        cors_origins = os.getenv("BACKEND_CORS_ORIGINS")
        self.BACKEND_CORS_ORIGINS: List[str] = (
            [origin.strip() for origin in cors_origins.split(",") if origin.strip()]
            if cors_origins
            else default_cors
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
