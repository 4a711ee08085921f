import pytest

from shiptrack.application.workflow import WorkflowEngine
from shiptrack.domain.models import ReceivingStatus, ShipmentStatus
from shiptrack.exceptions import ConflictError, NotFoundError
from shiptrack.infrastructure.db import build_engine, init_models, make_session_factory
from shiptrack.infrastructure.repository import SqlShipmentRepository


@pytest.fixture
def sql_repository(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'shipments.db'}")
    init_models(engine)
    yield SqlShipmentRepository(make_session_factory(engine))
    engine.dispose()


class TestSqlShipmentRepository:

    @pytest.mark.asyncio
    async def test_add_and_get(self, sql_repository, make_record):
        record = await sql_repository.add(make_record())

        loaded = await sql_repository.get(record.id)
        assert loaded.id == record.id
        assert loaded.status == ShipmentStatus.ARRIVED_PTA
        assert loaded.discrepancies == []
        assert (await sql_repository.get_by_order_ref("PO-1001")).id == record.id
        assert await sql_repository.get("missing") is None

    @pytest.mark.asyncio
    async def test_save_round_trips_stage_metadata(self, sql_repository, make_record):
        record = await sql_repository.add(make_record(status=ShipmentStatus.RECEIVING))
        done = WorkflowEngine().complete_receiving(
            record, received_quantity=80, receiver="R", discrepancies=["wet cartons"]
        )

        await sql_repository.save(done, expected_status=ShipmentStatus.RECEIVING)
        loaded = await sql_repository.get(record.id)

        assert loaded.status == ShipmentStatus.RECEIVED
        assert loaded.receiving_status == ReceivingStatus.DISCREPANCY
        assert loaded.received_quantity == 80
        assert loaded.received_by == "R"
        assert loaded.discrepancies == ["wet cartons"]
        assert loaded.receiving_completed_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_order_ref(self, sql_repository, make_record):
        await sql_repository.add(make_record())
        with pytest.raises(ConflictError):
            await sql_repository.add(make_record(id="shp-2"))

    @pytest.mark.asyncio
    async def test_save_unknown(self, sql_repository, make_record):
        with pytest.raises(NotFoundError):
            await sql_repository.save(make_record(id="ghost"), expected_status=ShipmentStatus.ARRIVED_PTA)

    @pytest.mark.asyncio
    async def test_save_refuses_record_that_moved_on(self, sql_repository, make_record):
        record = await sql_repository.add(make_record(status=ShipmentStatus.ARRIVED_PTA))
        engine = WorkflowEngine()
        await sql_repository.save(engine.archive(record), expected_status=ShipmentStatus.ARRIVED_PTA)

        with pytest.raises(ConflictError) as exc_info:
            await sql_repository.save(
                engine.start_unloading(record), expected_status=ShipmentStatus.ARRIVED_PTA
            )
        assert exc_info.value.current_status == "archived"
        assert (await sql_repository.get(record.id)).status == ShipmentStatus.ARCHIVED
