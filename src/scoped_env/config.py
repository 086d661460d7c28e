"""Package configuration.

Settings are an immutable snapshot.  They are read lazily from the
environment on first use and can be replaced at any time with
``configure()``.  Recognised variables:

    - ``SCOPED_ENV_ORDERING`` — ``strict``, ``warn`` (default) or ``off``.
    - ``SCOPED_ENV_ON_RESTORE_FAILURE`` — ``raise`` (default) or ``abort``.
    - ``SCOPED_ENV_LOG_CAPACITY`` — audit log size (default 1000).
"""

import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import StrEnum

from scoped_env.lock import environment_lock
from scoped_env.logging import DEFAULT_CAPACITY, audit_log
from scoped_env.ordering import OrderingMode, override_stack

ENV_ORDERING = "SCOPED_ENV_ORDERING"
ENV_ON_RESTORE_FAILURE = "SCOPED_ENV_ON_RESTORE_FAILURE"
ENV_LOG_CAPACITY = "SCOPED_ENV_LOG_CAPACITY"


class ConfigError(ValueError):
    """Raise when a configuration value cannot be interpreted."""


class RestoreFailurePolicy(StrEnum):
    """What to do when a guard cannot restore its variable.

    RAISE raises ``RestoreError`` from ``release()``; ABORT kills the
    process with ``os.abort()``.
    """

    RAISE = "raise"
    ABORT = "abort"


def _to_enum(kind: type[StrEnum], value: object, name: str) -> StrEnum:
    """Convert *value* to a member of *kind*, accepting any letter case."""
    if isinstance(value, kind):
        return value
    if isinstance(value, str):
        try:
            return kind(value.strip().lower())
        except ValueError:
            pass
    choices = ", ".join(m.value for m in kind)
    msg = f"{name}={value!r} is not one of: {choices}"
    raise ConfigError(msg)


@dataclass(frozen=True)
class Settings:
    """Immutable package settings.

    Attributes:
        ordering: How out-of-order same-key releases are treated.
        on_restore_failure: How a failed restore is escalated.
        log_capacity: Maximum number of audit log entries and ordering
            violations retained.

    """

    ordering: OrderingMode = OrderingMode.WARN
    on_restore_failure: RestoreFailurePolicy = RestoreFailurePolicy.RAISE
    log_capacity: int = DEFAULT_CAPACITY

    def __post_init__(self) -> None:
        """Normalise enum fields and validate the capacity."""
        object.__setattr__(self, "ordering", _to_enum(OrderingMode, self.ordering, "ordering"))
        object.__setattr__(
            self,
            "on_restore_failure",
            _to_enum(RestoreFailurePolicy, self.on_restore_failure, "on_restore_failure"),
        )
        if isinstance(self.log_capacity, bool) or not isinstance(self.log_capacity, int):
            msg = f"log_capacity must be an int, got {self.log_capacity!r}"
            raise ConfigError(msg)
        if self.log_capacity < 1:
            msg = f"log_capacity must be positive, got {self.log_capacity}"
            raise ConfigError(msg)

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from ``SCOPED_ENV_*`` variables.

        Unset or blank variables fall back to the defaults.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``).

        Raises:
            ConfigError: If a variable holds an unknown value.

        """
        source = os.environ if environ is None else environ
        fields: dict[str, object] = {}
        if raw := source.get(ENV_ORDERING, "").strip():
            fields["ordering"] = _to_enum(OrderingMode, raw, ENV_ORDERING)
        if raw := source.get(ENV_ON_RESTORE_FAILURE, "").strip():
            fields["on_restore_failure"] = _to_enum(
                RestoreFailurePolicy, raw, ENV_ON_RESTORE_FAILURE
            )
        if raw := source.get(ENV_LOG_CAPACITY, "").strip():
            try:
                fields["log_capacity"] = int(raw)
            except ValueError:
                msg = f"{ENV_LOG_CAPACITY}={raw!r} is not an integer"
                raise ConfigError(msg) from None
        return cls(**fields)  # type: ignore[arg-type]


_settings_lock = threading.Lock()
_settings: Settings | None = None


def _reinit_after_fork() -> None:
    """Replace the settings lock in a freshly forked child."""
    global _settings_lock  # noqa: PLW0603
    _settings_lock = threading.Lock()


if hasattr(os, "register_at_fork"):
    os.register_at_fork(after_in_child=_reinit_after_fork)


def _install(settings: Settings) -> None:
    """Make *settings* active (caller holds ``_settings_lock``)."""
    global _settings  # noqa: PLW0603
    _settings = settings


def _resize_buffers(settings: Settings) -> None:
    """Apply ``log_capacity`` to the audit log and the violation record."""
    audit_log.capacity = settings.log_capacity
    with environment_lock():
        override_stack.capacity = settings.log_capacity


def get_settings() -> Settings:
    """Return the active settings, loading them from the environment once."""
    with _settings_lock:
        loaded = _settings is None
        if loaded:
            _install(Settings.from_environ())
        settings = _settings
    assert settings is not None  # noqa: S101
    if loaded:
        _resize_buffers(settings)
    return settings


def configure(**changes: object) -> Settings:
    """Replace individual settings.

    String values are accepted for enum fields (``ordering="strict"``).
    Guards already live keep the settings they were created with.

    Returns:
        The settings that were active before the change, suitable for
        passing to ``restore_settings``.

    Raises:
        ConfigError: If a field name or value is invalid.

    """
    current = get_settings()
    try:
        updated = replace(current, **changes)  # type: ignore[arg-type]
    except TypeError as exc:
        raise ConfigError(str(exc)) from None
    restore_settings(updated)
    return current


def restore_settings(settings: Settings) -> None:
    """Reinstate a snapshot returned by ``configure``."""
    with _settings_lock:
        _install(settings)
    _resize_buffers(settings)


def reset_settings() -> None:
    """Forget the active settings; the next read reloads from the environment."""
    global _settings  # noqa: PLW0603
    with _settings_lock:
        _settings = None
