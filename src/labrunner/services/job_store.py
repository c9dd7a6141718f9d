from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel, Field, create_engine, Session
from enum import Enum
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    QUEUED = "queued"; RUNNING = "running"
    COMPLETE = "complete"; ERROR = "error"; THROTTLED = "throttled"


class JobRecord(SQLModel, table=True):
    """Bookkeeping for one execution. Learner code and output are never stored."""
    id: str = Field(primary_key=True)
    language: str
    status: JobStatus = JobStatus.QUEUED
    classification: Optional[str] = None
    tests_total: int = 0
    tests_passed: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_s: Optional[float] = None


class JobStore:
    def __init__(self, url="sqlite:///./labrunner.db"):
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, connect_args=connect_args)
        SQLModel.metadata.create_all(self.engine)
        # detached records stay readable after the session closes
        self.SessionLocal = sessionmaker(bind=self.engine, class_=Session, expire_on_commit=False)

    def add(self, rec: JobRecord):
        with self.SessionLocal() as s:
            s.add(rec)
            s.commit()

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self.SessionLocal() as s:
            return s.get(JobRecord, job_id)

    def update(self, rec: JobRecord) -> JobRecord:
        with self.SessionLocal() as s:
            db_rec = s.merge(rec)
            s.commit()
            return db_rec

    def mark_running(self, job_id: str) -> None:
        with self.SessionLocal() as s:
            rec = s.get(JobRecord, job_id)
            if rec is None:
                return
            rec.status = JobStatus.RUNNING
            rec.started_at = utcnow()
            s.commit()

    def finalize(self, job_id: str, *, classification: Optional[str],
                 tests_total: int, tests_passed: int) -> None:
        with self.SessionLocal() as s:
            rec = s.get(JobRecord, job_id)
            if rec is None:
                return
            now = utcnow()
            rec.status = JobStatus.ERROR if classification else JobStatus.COMPLETE
            rec.classification = classification
            rec.tests_total = tests_total
            rec.tests_passed = tests_passed
            rec.finished_at = now
            if rec.started_at is not None:
                started = rec.started_at
                if started.tzinfo is None:   # sqlite drops tzinfo
                    started = started.replace(tzinfo=timezone.utc)
                rec.duration_s = round((now - started).total_seconds(), 3)
            s.commit()
