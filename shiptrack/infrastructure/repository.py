"""
Shipment record storage.

The workflow layer only depends on the ``ShipmentRepository`` interface.
Two adapters ship with the service: an in-memory store for tests and local
runs, and a SQLAlchemy store whose blocking session work is moved off the
event loop with Starlette's threadpool.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from shiptrack.domain.models import ShipmentRecord, ShipmentStatus
from shiptrack.exceptions import ConflictError, NotFoundError
from shiptrack.infrastructure.db import ShipmentRow


class ShipmentRepository(ABC):

    @abstractmethod
    async def get(self, shipment_id: str) -> Optional[ShipmentRecord]:
        ...

    @abstractmethod
    async def get_by_order_ref(self, order_ref: str) -> Optional[ShipmentRecord]:
        ...

    @abstractmethod
    async def add(self, record: ShipmentRecord) -> ShipmentRecord:
        """Insert a new record; a duplicate order reference raises ConflictError."""

    @abstractmethod
    async def save(self, record: ShipmentRecord, expected_status: ShipmentStatus) -> ShipmentRecord:
        """Replace an existing record only if it is still in ``expected_status``.

        The status check and the write are one atomic step. An unknown id
        raises NotFoundError; a record that has moved on raises ConflictError
        carrying its current status.
        """


class InMemoryShipmentRepository(ShipmentRepository):
    def __init__(self):
        self._records: Dict[str, ShipmentRecord] = {}

    async def get(self, shipment_id: str) -> Optional[ShipmentRecord]:
        return self._records.get(shipment_id)

    async def get_by_order_ref(self, order_ref: str) -> Optional[ShipmentRecord]:
        for record in self._records.values():
            if record.order_ref == order_ref:
                return record
        return None

    async def add(self, record: ShipmentRecord) -> ShipmentRecord:
        if await self.get_by_order_ref(record.order_ref) is not None:
            raise ConflictError(f"Shipment with order reference {record.order_ref} already exists")
        self._records[record.id] = record
        return record

    async def save(self, record: ShipmentRecord, expected_status: ShipmentStatus) -> ShipmentRecord:
        current = self._records.get(record.id)
        if current is None:
            raise NotFoundError("Shipment", record.id)
        if current.status != expected_status:
            raise _stale(record.id, expected_status, current.status.value)
        self._records[record.id] = record
        return record


def _stale(shipment_id: str, expected_status: ShipmentStatus, current_status: str) -> ConflictError:
    return ConflictError(
        f"Shipment {shipment_id} changed concurrently: expected '{expected_status.value}', found '{current_status}'",
        current_status=current_status,
    )


def _to_columns(record: ShipmentRecord) -> dict:
    columns = {}
    for name, value in record.model_dump().items():
        columns[name] = value.value if isinstance(value, Enum) else value
    return columns


def _to_record(row: ShipmentRow) -> ShipmentRecord:
    data = {column.key: getattr(row, column.key) for column in ShipmentRow.__table__.columns}
    data["discrepancies"] = data.get("discrepancies") or []
    return ShipmentRecord.model_validate(data)


class SqlShipmentRepository(ShipmentRepository):
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def get(self, shipment_id: str) -> Optional[ShipmentRecord]:
        return await run_in_threadpool(self._get, shipment_id)

    async def get_by_order_ref(self, order_ref: str) -> Optional[ShipmentRecord]:
        return await run_in_threadpool(self._get_by_order_ref, order_ref)

    async def add(self, record: ShipmentRecord) -> ShipmentRecord:
        return await run_in_threadpool(self._add, record)

    async def save(self, record: ShipmentRecord, expected_status: ShipmentStatus) -> ShipmentRecord:
        return await run_in_threadpool(self._save, record, expected_status)

    def _get(self, shipment_id: str) -> Optional[ShipmentRecord]:
        with self._session_factory() as db:
            row = db.get(ShipmentRow, shipment_id)
            return _to_record(row) if row else None

    def _get_by_order_ref(self, order_ref: str) -> Optional[ShipmentRecord]:
        with self._session_factory() as db:
            row = db.execute(
                select(ShipmentRow).where(ShipmentRow.order_ref == order_ref)
            ).scalar_one_or_none()
            return _to_record(row) if row else None

    def _add(self, record: ShipmentRecord) -> ShipmentRecord:
        with self._session_factory() as db:
            db.add(ShipmentRow(**_to_columns(record)))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise ConflictError(f"Shipment with order reference {record.order_ref} already exists")
        return record

    def _save(self, record: ShipmentRecord, expected_status: ShipmentStatus) -> ShipmentRecord:
        columns = _to_columns(record)
        columns.pop("id")
        with self._session_factory() as db:
            result = db.execute(
                update(ShipmentRow)
                .where(ShipmentRow.id == record.id, ShipmentRow.status == expected_status.value)
                .values(**columns)
            )
            if result.rowcount == 1:
                db.commit()
                return record
            db.rollback()
            current = db.execute(
                select(ShipmentRow.status).where(ShipmentRow.id == record.id)
            ).scalar_one_or_none()
        if current is None:
            raise NotFoundError("Shipment", record.id)
        raise _stale(record.id, expected_status, current)
