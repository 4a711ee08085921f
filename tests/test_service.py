"""
Workflow service tests
Persistence, rejection handling and notifications around each transition
"""

import asyncio

import pytest

from conftest import FakeTransport, make_identity
from shiptrack.application.schemas import DocumentInfo, InventoryCounts, ShipmentCreate
from shiptrack.application.service import ShipmentWorkflowService
from shiptrack.domain.models import InspectionStatus, ShipmentStatus
from shiptrack.exceptions import ConflictError, NotFoundError, ValidationError
from shiptrack.infrastructure.db import build_engine, init_models, make_session_factory
from shiptrack.infrastructure.repository import InMemoryShipmentRepository, SqlShipmentRepository
from shiptrack.realtime.events import ShipmentEventEmitter


@pytest.fixture
def repository():
    return InMemoryShipmentRepository()


@pytest.fixture
def service(repository, manager):
    return ShipmentWorkflowService(repository, events=ShipmentEventEmitter(manager))


def _watch(manager, shipment_id, connection_id="c-watch"):
    transport = FakeTransport()
    connection = manager.register(make_identity(connection_id), transport)
    manager.presence.join(connection.identity, shipment_id)
    return connection, transport


class TestShipmentCreation:

    @pytest.mark.asyncio
    async def test_starts_planned_by_freight(self, service):
        air = await service.create_shipment(ShipmentCreate(order_ref="PO-1", supplier="Acme", quantity=10))
        sea = await service.create_shipment(
            ShipmentCreate(order_ref="PO-2", supplier="Acme", quantity=10, freight="seafreight")
        )
        assert air.status == ShipmentStatus.PLANNED_AIRFREIGHT
        assert sea.status == ShipmentStatus.PLANNED_SEAFREIGHT
        assert (await service.get_shipment(air.id)).order_ref == "PO-1"

    @pytest.mark.asyncio
    async def test_duplicate_order_ref(self, service):
        await service.create_shipment(ShipmentCreate(order_ref="PO-1", supplier="Acme", quantity=10))
        with pytest.raises(ConflictError):
            await service.create_shipment(ShipmentCreate(order_ref="PO-1", supplier="Other", quantity=5))

    @pytest.mark.asyncio
    async def test_unknown_freight_mode(self, service):
        with pytest.raises(ValidationError):
            await service.create_shipment(
                ShipmentCreate(order_ref="PO-1", supplier="Acme", quantity=10, freight="rail")
            )

    @pytest.mark.asyncio
    async def test_unknown_shipment(self, service):
        with pytest.raises(NotFoundError):
            await service.start_unloading("missing")


class TestTransitions:

    @pytest.mark.asyncio
    async def test_rejected_transition_is_not_saved_or_broadcast(self, service, repository, manager, make_record):
        record = await repository.add(make_record(status=ShipmentStatus.ARRIVED_PTA))
        connection, transport = _watch(manager, record.id)

        with pytest.raises(ConflictError) as exc_info:
            await service.complete_inspection(record.id, passed=True)
        await connection.drain()

        assert exc_info.value.valid_sources == ["inspecting"]
        assert exc_info.value.current_status == "arrived_pta"
        assert (await repository.get(record.id)) == record
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_invalid_input_is_not_saved_or_broadcast(self, service, repository, manager, make_record):
        record = await repository.add(make_record(status=ShipmentStatus.INSPECTION_FAILED))
        connection, transport = _watch(manager, record.id)

        with pytest.raises(ValidationError):
            await service.reject(record.id, reason="")
        await connection.drain()

        assert (await repository.get(record.id)).status == ShipmentStatus.INSPECTION_FAILED
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_accepted_transition_is_saved_then_broadcast(self, service, repository, manager, make_record):
        record = await repository.add(make_record(status=ShipmentStatus.ARRIVED_PTA))
        connection, transport = _watch(manager, record.id)

        updated = await service.start_unloading(record.id, actor="dock-1")
        await connection.drain()

        assert (await repository.get(record.id)).status == ShipmentStatus.UNLOADING
        assert updated.unloading_started_at is not None
        [update] = transport.of("shipment:updated")
        assert update["shipmentId"] == record.id
        assert update["status"] == "unloading"
        assert update["changedBy"] == "dock-1"
        assert update["shipment"]["orderRef"] == "PO-1001"

    @pytest.mark.asyncio
    async def test_failed_inspection_walkthrough(self, service, repository, manager, make_record):
        record = await repository.add(make_record(status=ShipmentStatus.ARRIVED_PTA))
        connection, transport = _watch(manager, record.id)

        await service.start_unloading(record.id)
        await service.complete_unloading(record.id)
        await service.start_inspection(record.id, inspector="A")
        failed = await service.complete_inspection(record.id, passed=False, notes="damaged")

        assert failed.status == ShipmentStatus.INSPECTION_FAILED
        assert failed.inspection_status == InspectionStatus.FAILED
        assert failed.inspection_notes == "damaged"
        assert failed.inspected_by == "A"

        with pytest.raises(ConflictError) as exc_info:
            await service.start_inspection(record.id, inspector="B")
        assert exc_info.value.valid_sources == ["inspection_pending"]

        rejected = await service.reject(record.id, reason="damaged beyond repair", actor="qa-lead")
        await connection.drain()

        assert rejected.status == ShipmentStatus.REJECTED
        statuses = [u.get("status") for u in transport.of("shipment:updated")]
        assert statuses.count("rejected") == 2
        inspection_notices = [u for u in transport.of("shipment:updated") if "inspection" in u]
        assert [n["inspectionStatus"] for n in inspection_notices] == ["in_progress", "failed"]
        rejection = [u for u in transport.of("shipment:updated") if "rejectionReason" in u][0]
        assert rejection["rejectedBy"] == "qa-lead"

    @pytest.mark.asyncio
    async def test_happy_path_to_storage_and_archive(self, service, repository, make_record):
        record = await repository.add(make_record(status=ShipmentStatus.PLANNED_SEAFREIGHT, quantity=50))

        await service.mark_in_transit(record.id)
        await service.mark_arrived(record.id, "klm")
        await service.start_unloading(record.id)
        await service.complete_unloading(record.id)
        await service.start_inspection(record.id, actor="qa")
        await service.complete_inspection(record.id, passed=True)
        await service.start_receiving(record.id, receiver="R")
        received = await service.complete_receiving(record.id, received_quantity=45)
        assert received.receiving_status.value == "partial"
        assert received.received_by == "R"

        stored = await service.mark_stored(record.id)
        archived = await service.archive(record.id)
        assert archived.archived_from_status == ShipmentStatus.STORED
        restored = await service.unarchive(record.id)
        assert restored.status == stored.status == ShipmentStatus.STORED

    @pytest.mark.asyncio
    async def test_service_without_events(self, repository, make_record):
        service = ShipmentWorkflowService(repository)
        record = await repository.add(make_record(status=ShipmentStatus.ARRIVED_KLM))
        assert (await service.start_unloading(record.id)).status == ShipmentStatus.UNLOADING


class _InterleavingRepository(InMemoryShipmentRepository):
    """Yields to the loop after every read so concurrent transitions both see the same status."""

    async def get(self, shipment_id):
        record = await super().get(shipment_id)
        await asyncio.sleep(0)
        return record


class TestConcurrentTransitions:

    @pytest.mark.asyncio
    async def test_stale_transition_is_refused_and_not_broadcast(self, manager, make_record):
        repository = _InterleavingRepository()
        service = ShipmentWorkflowService(repository, events=ShipmentEventEmitter(manager))
        record = await repository.add(make_record(status=ShipmentStatus.ARRIVED_PTA))
        connection, transport = _watch(manager, record.id)

        archived, unloading = await asyncio.gather(
            service.archive(record.id),
            service.start_unloading(record.id),
            return_exceptions=True,
        )
        await connection.drain()

        assert archived.status == ShipmentStatus.ARCHIVED
        assert isinstance(unloading, ConflictError)
        assert unloading.current_status == "archived"
        assert unloading.valid_sources == ["arrived_pta", "arrived_klm", "arrived_offsite"]
        assert (await repository.get(record.id)).status == ShipmentStatus.ARCHIVED
        assert [u["status"] for u in transport.of("shipment:updated")] == ["archived"]

    @pytest.mark.asyncio
    async def test_sql_backed_race_has_one_winner(self, tmp_path, manager, make_record):
        engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}")
        init_models(engine)
        repository = SqlShipmentRepository(make_session_factory(engine))
        service = ShipmentWorkflowService(repository, events=ShipmentEventEmitter(manager))
        record = await repository.add(make_record(status=ShipmentStatus.ARRIVED_PTA))
        connection, transport = _watch(manager, record.id)

        results = await asyncio.gather(
            service.start_unloading(record.id, actor="dock-1"),
            service.start_unloading(record.id, actor="dock-2"),
            return_exceptions=True,
        )
        await connection.drain()
        engine.dispose()

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1 and isinstance(losers[0], ConflictError)
        [update] = transport.of("shipment:updated")
        assert update["changedBy"] == winners[0].unloading_started_by


class TestEventEmitter:

    @pytest.mark.asyncio
    async def test_document_uploads(self, manager):
        connection, transport = _watch(manager, "S1")
        emitter = ShipmentEventEmitter(manager)

        emitter.emit_document_uploaded("S1", DocumentInfo(id="d1", file_name="invoice.pdf", file_size=1200))
        emitter.emit_supplier_document_upload("S1", DocumentInfo(id="d2", file_name="packing.pdf"))
        await connection.drain()

        first, second = transport.of("document:uploaded")
        assert first["document"]["fileName"] == "invoice.pdf"
        assert first["document"]["uploadedBy"] == "system"
        assert first["document"]["isVerified"] is False
        assert second["document"]["uploadedBy"] == "supplier"
        assert second["document"]["uploadedBySupplier"] is True

    @pytest.mark.asyncio
    async def test_inventory_update(self, manager):
        connection, transport = _watch(manager, "S1")
        ShipmentEventEmitter(manager).emit_inventory_update(
            "S1", InventoryCounts(pallets=4, cartons=80, warehouse_location="B-12")
        )
        await connection.drain()

        [update] = transport.of("shipment:updated")
        assert update["inventory"] == {"pallets": 4, "cartons": 80, "warehouseLocation": "B-12"}

    @pytest.mark.asyncio
    async def test_capacity_goes_to_everyone(self, manager):
        watching, t_watching = _watch(manager, "S1", "c-1")
        idle = manager.register(make_identity("c-2"), FakeTransport())

        delivered = ShipmentEventEmitter(manager).emit_warehouse_capacity("PTA", 500, 120, 380)
        await watching.drain()
        await idle.drain()

        assert delivered == 2
        [capacity] = t_watching.of("warehouse:capacity_updated")
        assert capacity == {
            "location": "PTA",
            "totalCapacity": 500,
            "availableBins": 120,
            "usedCapacity": 380,
            "timestamp": capacity["timestamp"],
        }

    @pytest.mark.asyncio
    async def test_rejection_requires_rejected_record(self, manager, make_record):
        _watch(manager, "shp-1")
        assert ShipmentEventEmitter(manager).emit_rejection(make_record(status=ShipmentStatus.STORED)) == 0
