import json
import logging

import pytest

from shared.core import HealthStatus, ServiceHealth, get_logger
from shared.core.health import DISK_FREE_GB, _grade
from shared.core.logging_config import SecurityFilter, StructuredFormatter


class TestOverallStatus:

    @pytest.mark.parametrize("statuses, expected", [
        ([], HealthStatus.PASS),
        ([HealthStatus.PASS, HealthStatus.PASS], HealthStatus.PASS),
        ([HealthStatus.PASS, HealthStatus.WARN], HealthStatus.WARN),
        ([HealthStatus.WARN, HealthStatus.FAIL, HealthStatus.PASS], HealthStatus.FAIL),
    ])
    def test_worst_status_wins(self, statuses, expected):
        checks = {f"c{i}": {"status": s} for i, s in enumerate(statuses)}
        assert ServiceHealth.calculate_overall_status(checks) == expected

    def test_thresholds(self):
        assert _grade(0.5, DISK_FREE_GB) == HealthStatus.FAIL
        assert _grade(2.0, DISK_FREE_GB) == HealthStatus.WARN
        assert _grade(50.0, DISK_FREE_GB) == HealthStatus.PASS


class TestChecks:

    def test_no_engine_means_no_datastore_check(self):
        health = ServiceHealth("svc", engine_provider=lambda: None)
        assert "database:connectivity" not in health.run_checks()

    def test_broken_stats_degrade_to_warn(self):
        def stats():
            raise RuntimeError("boom")

        health = ServiceHealth("svc", realtime_stats=stats)
        check = health.run_checks()["realtime:channels"]
        assert check["status"] == HealthStatus.WARN
        assert check["output"] == "boom"

    def test_counts_checks(self):
        health = ServiceHealth("svc")
        health.run_checks()
        health.run_checks()
        assert health.checks_performed == 2


class TestStructuredLogging:

    def _record(self, msg):
        return logging.LogRecord("shiptrack.test", logging.INFO, __file__, 1, msg, None, None)

    def test_formatter_emits_json_with_custom_fields(self):
        record = self._record("hello")
        record.extra_fields = {"shipment_id": "shp-1"}
        entry = json.loads(StructuredFormatter("svc", "2.0.0").format(record))
        assert entry["message"] == "hello"
        assert entry["service"]["version"] == "2.0.0"
        assert entry["custom"] == {"shipment_id": "shp-1"}

    def test_bearer_tokens_are_redacted(self):
        record = self._record("auth header Bearer abc.def.ghi")
        SecurityFilter().filter(record)
        assert "abc.def.ghi" not in record.getMessage()

    def test_bound_fields_merge_with_call_fields(self):
        logger = get_logger("shiptrack.test", component="channel")
        _, kwargs = logger.process("msg", {"extra": {"extra_fields": {"room": "X"}}})
        assert kwargs["extra"]["extra_fields"] == {"component": "channel", "room": "X"}
