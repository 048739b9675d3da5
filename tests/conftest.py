"""Shared test fixtures."""

from __future__ import annotations

import pytest

from groundwork.core.config import AuditConfig
from groundwork.governance.audit import AuditLogger


@pytest.fixture
def audit_logger(tmp_path):
    """An AuditLogger writing to a temp directory."""
    return AuditLogger(config=AuditConfig(log_dir=str(tmp_path / "audit")))
