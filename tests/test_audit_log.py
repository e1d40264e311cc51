"""Tests for the CSV audit log."""

from __future__ import annotations

import pytest

from services.audit_log import AuditLog

pytestmark = pytest.mark.asyncio


class TestAuditLog:
    async def test_file_created_on_first_record(self, tmp_path):
        audit = AuditLog(str(tmp_path / "audit"))
        assert audit.current_file is None
        assert await audit.entries() == []

        await audit.record("reset_queue", None, 4)

        assert audit.current_file.exists()
        assert audit.current_file.read_text(encoding="utf-8").splitlines()[0] == (
            "timestamp,action,subject_id,affected,detail"
        )

    async def test_entries_round_trip_and_limit(self, tmp_path):
        audit = AuditLog(str(tmp_path))
        await audit.record("activate_set_list", "S1", 1, "Friday, late show")
        await audit.record("reset_queue", None, 3)

        entries = await audit.entries()
        assert [e["action"] for e in entries] == ["activate_set_list", "reset_queue"]
        assert entries[0]["detail"] == "Friday, late show"
        assert entries[1]["subject_id"] == ""

        assert [e["action"] for e in await audit.entries(limit=1)] == ["reset_queue"]
