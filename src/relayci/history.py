# history.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker

from .model import Run


class Base(DeclarativeBase):
    pass


class RunRecord(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    pipeline: Mapped[str] = mapped_column(sa.Text, nullable=False)
    event: Mapped[str] = mapped_column(sa.Text, nullable=False)
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    actor: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    jobs: Mapped[List["JobRecord"]] = relationship(
        back_populates="run", cascade="all, delete-orphan", order_by="JobRecord.id"
    )


class JobRecord(Base):
    __tablename__ = "jobs"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    job_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    state: Mapped[str] = mapped_column(sa.Text, nullable=False)
    duration_ms: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    output_tail: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    run: Mapped[RunRecord] = relationship(back_populates="jobs")


@dataclass(frozen=True)
class JobSummary:
    job_id: str
    state: str
    duration_ms: int
    error: Optional[str]
    output_tail: str


@dataclass(frozen=True)
class RunSummary:
    id: str
    pipeline: str
    event: str
    ref: str
    status: str
    created_at: datetime
    finished_at: Optional[datetime]
    jobs: List[JobSummary]


def _summary(rec: RunRecord) -> RunSummary:
    return RunSummary(
        id=rec.id,
        pipeline=rec.pipeline,
        event=rec.event,
        ref=rec.ref,
        status=rec.status,
        created_at=rec.created_at,
        finished_at=rec.finished_at,
        jobs=[
            JobSummary(j.job_id, j.state, j.duration_ms, j.error, j.output_tail)
            for j in rec.jobs
        ],
    )


def sqlite_url(path: str | Path) -> str:
    return f"sqlite:///{Path(path).resolve()}"


class RunHistory:
    """Persisted Run history: one row per Run, one per JobInstance."""

    def __init__(self, url: str):
        if url.startswith("sqlite:///") and url != "sqlite:///:memory:":
            Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
        self.engine = sa.create_engine(url)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(self.engine, expire_on_commit=False)

    def record(self, run: Run) -> None:
        with self.Session.begin() as s:
            rec = s.get(RunRecord, run.id)
            if rec is None:
                rec = RunRecord(id=run.id)
                s.add(rec)
            rec.pipeline = run.pipeline.name
            rec.event = run.context.event
            rec.ref = run.context.ref
            rec.actor = run.context.actor
            rec.status = run.status.value
            rec.created_at = run.created_at
            rec.finished_at = run.finished_at
            rec.jobs = [
                JobRecord(
                    job_id=inst.job_id,
                    state=inst.display_status,
                    duration_ms=inst.duration_ms,
                    error=inst.error,
                    output_tail=inst.output_tail,
                )
                for inst in run.jobs.values()
            ]

    def get(self, run_id: str) -> Optional[RunSummary]:
        with self.Session() as s:
            rec = s.get(RunRecord, run_id)
            return _summary(rec) if rec is not None else None

    def recent(self, limit: int = 20) -> List[RunSummary]:
        with self.Session() as s:
            q = sa.select(RunRecord).order_by(RunRecord.created_at.desc()).limit(limit)
            return [_summary(rec) for rec in s.scalars(q)]

    def prune(self, older_than: timedelta, *, now: Optional[datetime] = None) -> int:
        cutoff = (now or datetime.now(timezone.utc)) - older_than
        with self.Session.begin() as s:
            q = sa.select(RunRecord).where(RunRecord.created_at < cutoff)
            old = list(s.scalars(q))
            for rec in old:
                s.delete(rec)
            return len(old)
