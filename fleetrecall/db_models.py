from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_key: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    input_file: Mapped[str] = mapped_column(Text)
    vin_column: Mapped[str] = mapped_column(String(16), default="auto")
    trigger_source: Mapped[str] = mapped_column(String(32), default="manual")
    status: Mapped[str] = mapped_column(String(32), default="queued")
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    total_rows: Mapped[int] = mapped_column(Integer, default=0)
    vin_count: Mapped[int] = mapped_column(Integer, default=0)
    invalid_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_lookups: Mapped[int] = mapped_column(Integer, default=0)
    recall_rows: Mapped[int] = mapped_column(Integer, default=0)
    unique_recall_numbers: Mapped[int] = mapped_column(Integer, default=0)
    registry_lookups: Mapped[int] = mapped_column(Integer, default=0)
    column_used: Mapped[str] = mapped_column(String(128), default="auto")
    report_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    steps: Mapped[list["StepRun"]] = relationship(back_populates="run", cascade="all, delete-orphan")
    lookups: Mapped[list["VinLookupRecord"]] = relationship(back_populates="run", cascade="all, delete-orphan")
    invalid_vins: Mapped[list["InvalidVinRecord"]] = relationship(back_populates="run", cascade="all, delete-orphan")
    resolutions: Mapped[list["EaResolutionRecord"]] = relationship(back_populates="run", cascade="all, delete-orphan")


class StepRun(Base):
    __tablename__ = "step_runs"
    __table_args__ = (UniqueConstraint("run_id", "step_name", "attempt", name="uq_step_attempt"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("pipeline_runs.id", ondelete="CASCADE"), index=True)
    step_name: Mapped[str] = mapped_column(String(64), index=True)
    attempt: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(32), default="started")
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    run: Mapped[PipelineRun] = relationship(back_populates="steps")


class VinLookupRecord(Base):
    __tablename__ = "vin_lookups"
    __table_args__ = (UniqueConstraint("run_id", "vin", name="uq_run_vin"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("pipeline_runs.id", ondelete="CASCADE"), index=True)
    vin: Mapped[str] = mapped_column(String(17))
    state: Mapped[str] = mapped_column(String(16))
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    recall_count: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    run: Mapped[PipelineRun] = relationship(back_populates="lookups")


class InvalidVinRecord(Base):
    __tablename__ = "invalid_vins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("pipeline_runs.id", ondelete="CASCADE"), index=True)
    row_index: Mapped[int] = mapped_column(Integer)
    invalid_value: Mapped[str] = mapped_column(Text)
    source_column: Mapped[str] = mapped_column(String(128))
    reason: Mapped[str] = mapped_column(String(32))
    raw_row: Mapped[str] = mapped_column(Text)

    run: Mapped[PipelineRun] = relationship(back_populates="invalid_vins")


class EaResolutionRecord(Base):
    __tablename__ = "ea_resolutions"
    __table_args__ = (UniqueConstraint("run_id", "recall_number", name="uq_run_recall_number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("pipeline_runs.id", ondelete="CASCADE"), index=True)
    recall_number: Mapped[str] = mapped_column(String(64))
    ea_exists: Mapped[bool] = mapped_column(Boolean, default=False)
    ea_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    vin_count: Mapped[int] = mapped_column(Integer, default=0)

    run: Mapped[PipelineRun] = relationship(back_populates="resolutions")
