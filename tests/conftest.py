"""Shared fixtures: every test starts from default settings and an empty audit trail."""

from collections.abc import Generator

import pytest

from scoped_env import audit_log, get_settings, override_stack, reset_settings


@pytest.fixture(autouse=True)
def _fresh_package_state() -> Generator[None]:
    """Reset settings, the audit log and recorded ordering violations."""
    reset_settings()
    get_settings()
    audit_log.clear()
    override_stack.clear_violations()
    yield
    reset_settings()
