"""Scoped, thread-safe overrides of process environment variables.

Re-exports public symbols so callers can write::

    from scoped_env import create, overrides, ScopedOverride
"""

from scoped_env.config import (
    ConfigError,
    RestoreFailurePolicy,
    Settings,
    configure,
    get_settings,
    reset_settings,
    restore_settings,
)
from scoped_env.env import PROCESS_ENV, EnvironmentAccessor, EnvironmentError, MemoryEnvironment
from scoped_env.guard import RestoreError, ScopedOverride, create, overrides, remove
from scoped_env.lock import environment_lock
from scoped_env.logging import LogEntry, Logger, LogLevel, audit_log
from scoped_env.ordering import OrderingMode, OrderingViolation, OverrideOrderError, override_stack

__all__ = [
    "PROCESS_ENV",
    "ConfigError",
    "EnvironmentAccessor",
    "EnvironmentError",
    "LogEntry",
    "LogLevel",
    "Logger",
    "MemoryEnvironment",
    "OrderingMode",
    "OrderingViolation",
    "OverrideOrderError",
    "RestoreError",
    "RestoreFailurePolicy",
    "ScopedOverride",
    "Settings",
    "audit_log",
    "configure",
    "create",
    "environment_lock",
    "get_settings",
    "override_stack",
    "overrides",
    "remove",
    "reset_settings",
    "restore_settings",
]
