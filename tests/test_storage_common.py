import time

import pytest

from clinicgate.storage.common import call_store, page_offset
from clinicgate.storage.errors import ConstraintViolation, StoreUnavailable
from clinicgate.storage.models import AuditPage, Role, SeverityStats


class TestCallStore:
    async def test_returns_result(self):
        assert await call_store(lambda x: x * 2, 21, timeout=1.0, operation="double") == 42

    async def test_timeout_surfaces_as_unavailable(self):
        with pytest.raises(StoreUnavailable) as exc_info:
            await call_store(time.sleep, 0.3, timeout=0.05, operation="slow_read")
        assert exc_info.value.operation == "slow_read"

    async def test_io_failure_surfaces_as_unavailable(self):
        def broken():
            raise ConnectionError("connection refused")

        with pytest.raises(StoreUnavailable):
            await call_store(broken, timeout=1.0, operation="get_family")

    async def test_constraint_violation_passes_through(self):
        def duplicate():
            raise ConstraintViolation("email already exists", {"tenant_id": "t1"})

        with pytest.raises(ConstraintViolation):
            await call_store(duplicate, timeout=1.0, operation="create_account")


def test_page_offset():
    assert page_offset(1, 50) == 0
    assert page_offset(3, 20) == 40
    assert page_offset(0, 20) == 0


def test_role_aliases():
    assert Role.parse("Dentist") == Role.DOCTOR
    assert Role.parse("receptionist") == Role.STAFF
    with pytest.raises(ValueError):
        Role.parse("janitor")


def test_severity_stats_fill_missing_levels():
    stats = SeverityStats.from_counts({"info": 2, "critical": 1})
    assert stats.total == 3
    assert stats.as_dict() == {"info": 2, "low": 0, "medium": 0, "high": 0, "critical": 1}


def test_audit_page_count():
    assert AuditPage(entries=[], total=0, page=1, page_size=50).pages == 0
    assert AuditPage(entries=[], total=51, page=1, page_size=50).pages == 2
