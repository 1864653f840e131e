"""Tests for the audit log."""

import json
import tempfile
from pathlib import Path

import pytest

from apihub.audit import AuditLogger


class TestAuditLogger:
    """Test audit logging."""

    @pytest.fixture
    def temp_dir(self):
        with tempfile.TemporaryDirectory() as d:
            yield Path(d)

    def test_creates_parent_dirs(self, temp_dir):
        log_path = temp_dir / "nested" / "audit.jsonl"
        logger = AuditLogger(log_path)

        logger.log("scope_granted", environment="test")

        assert log_path.exists()

    def test_appends_json_lines(self, temp_dir):
        logger = AuditLogger(temp_dir / "audit.jsonl")

        logger.log("event1")
        logger.log("event2")

        entries = logger.read()
        assert [e["event"] for e in entries] == ["event1", "event2"]
        assert all(e["ts"].endswith("Z") for e in entries)

    def test_includes_fields(self, temp_dir):
        logger = AuditLogger(temp_dir / "audit.jsonl")

        logger.log(
            "scope_revoked",
            environment="production",
            client_id="p1",
            scope="read:x",
            application_id="app-1",
            result="ok",
        )

        entry = logger.read()[0]
        assert entry["environment"] == "production"
        assert entry["client_id"] == "p1"
        assert entry["scope"] == "read:x"
        assert entry["application_id"] == "app-1"
        assert entry["result"] == "ok"
        assert "error" not in entry

    def test_strips_private_params(self, temp_dir):
        logger = AuditLogger(temp_dir / "audit.jsonl")

        logger.log("credential_added", params={"client_id": "c1", "_secret": "hidden"})

        entry = json.loads((temp_dir / "audit.jsonl").read_text().strip())
        assert entry["params"] == {"client_id": "c1"}

    def test_read_missing_file(self, temp_dir):
        logger = AuditLogger(temp_dir / "audit.jsonl")

        assert logger.read() == []
