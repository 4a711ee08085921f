from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON, DateTime, Float, String, Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from shiptrack.core_settings import get_settings


class Base(DeclarativeBase):
    pass


class ShipmentRow(Base):
    __tablename__ = "shipments"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_ref: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    supplier: Mapped[str] = mapped_column(String(200))
    supplier_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    quantity: Mapped[float] = mapped_column(Float, default=0)
    status: Mapped[str] = mapped_column(String(30), index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status_changed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status_changed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    arrived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    unloading_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    unloading_started_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    unloading_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    unloading_completed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    inspection_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    inspection_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    inspection_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    inspection_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    inspected_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    receiving_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    receiving_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    receiving_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    receiving_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    received_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    received_quantity: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    discrepancies: Mapped[List[str]] = mapped_column(JSON, default=list)

    stored_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejected_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)


def build_engine(database_url: Optional[str] = None) -> Engine:
    url = database_url or get_settings().database_url
    engine_kwargs: dict = {"echo": False, "future": True, "pool_pre_ping": True}
    # SQLite (local dev, tests) is shared across the threadpool
    if url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **engine_kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def init_models(engine: Engine):
    Base.metadata.create_all(engine)
