"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    DATABASE_URL: str
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    EXAM_DURATION_SECONDS: int
    SECONDS_PER_UNANSWERED: int
    TICK_INTERVAL_SECONDS: float
    PASS_THRESHOLD_PERCENT: float
    EXAM_TOTAL_QUESTIONS: int
    CATEGORY_SESSION_SIZE: int
    WRONG_REVIEW_SIZE: int
    REVIEW_PER_CATEGORY: int
    RETENTION_CLEAR_STREAK: int
    RESULT_HISTORY_LIMIT: int
    SYNC_MAX_JOBS: int
    SYNC_JOB_TTL_SECONDS: int

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'exam.db'}")
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        # Exam timing. 60 minutes for the full mock exam, one minute of grace
        # per unanswered question when a study session is resumed.
        self.EXAM_DURATION_SECONDS = int(os.getenv("EXAM_DURATION_SECONDS", str(60 * 60)))
        self.SECONDS_PER_UNANSWERED = int(os.getenv("SECONDS_PER_UNANSWERED", "60"))
        self.TICK_INTERVAL_SECONDS = float(os.getenv("TICK_INTERVAL_SECONDS", "1"))
        self.PASS_THRESHOLD_PERCENT = float(os.getenv("PASS_THRESHOLD_PERCENT", "60"))
        # Session sizes
        self.EXAM_TOTAL_QUESTIONS = int(os.getenv("EXAM_TOTAL_QUESTIONS", "60"))
        self.CATEGORY_SESSION_SIZE = int(os.getenv("CATEGORY_SESSION_SIZE", "20"))
        self.WRONG_REVIEW_SIZE = int(os.getenv("WRONG_REVIEW_SIZE", "20"))
        self.REVIEW_PER_CATEGORY = int(os.getenv("REVIEW_PER_CATEGORY", "20"))
        self.RETENTION_CLEAR_STREAK = int(os.getenv("RETENTION_CLEAR_STREAK", "3"))
        # Result history behaves like a bounded device store; appends past
        # the limit raise StorageQuotaExceeded.
        self.RESULT_HISTORY_LIMIT = int(os.getenv("RESULT_HISTORY_LIMIT", "500"))
        self.SYNC_MAX_JOBS = int(os.getenv("SYNC_MAX_JOBS", "500"))
        self.SYNC_JOB_TTL_SECONDS = int(os.getenv("SYNC_JOB_TTL_SECONDS", "86400"))
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.RETENTION_CLEAR_STREAK < 1:
            raise RuntimeError("RETENTION_CLEAR_STREAK must be >= 1")
        if self.TICK_INTERVAL_SECONDS <= 0:
            raise RuntimeError("TICK_INTERVAL_SECONDS must be > 0")


settings = Settings()
