"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    DATABASE_URL: str
    MAX_UPLOAD_BYTES: int
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    AI_GRADER_URL: str
    AI_GRADER_TOKEN: str
    AI_GRADER_TIMEOUT_SECONDS: float
    GRADER_CALLBACK_TOKEN: str
    MCQ_PASS_PERCENTAGE: int
    GRADING_JOB_MAX_JOBS: int
    GRADING_JOB_TTL_SECONDS: int

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'app.db'}")
        self.MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(2 * 1024 * 1024)))  # 2 MB default
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        # empty URL disables automatic dispatch; submissions then wait at `submitted`
        self.AI_GRADER_URL = os.getenv("AI_GRADER_URL", "").strip()
        self.AI_GRADER_TOKEN = os.getenv("AI_GRADER_TOKEN", "")
        self.AI_GRADER_TIMEOUT_SECONDS = float(os.getenv("AI_GRADER_TIMEOUT_SECONDS", "60"))
        self.GRADER_CALLBACK_TOKEN = os.getenv("GRADER_CALLBACK_TOKEN", "change_me_grader")
        self.MCQ_PASS_PERCENTAGE = int(os.getenv("MCQ_PASS_PERCENTAGE", "70"))
        self.GRADING_JOB_MAX_JOBS = int(os.getenv("GRADING_JOB_MAX_JOBS", "500"))
        self.GRADING_JOB_TTL_SECONDS = int(os.getenv("GRADING_JOB_TTL_SECONDS", "86400"))
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.ENV != "dev" and self.GRADER_CALLBACK_TOKEN == "change_me_grader":
            raise RuntimeError("GRADER_CALLBACK_TOKEN must be set in non-dev environments")
        if not 0 <= self.MCQ_PASS_PERCENTAGE <= 100:
            raise RuntimeError("MCQ_PASS_PERCENTAGE must be between 0 and 100")


settings = Settings()
