"""Scoped overrides — set a variable for a scope, restore it afterwards.

A ``ScopedOverride`` binds one environment change to the lifetime of a
scope.  Creating it captures the current value and applies the new
one; releasing it puts the captured value back (or removes the key if
it was absent).  Release happens exactly once, whether the scope ends
normally, returns early, or raises::

    with create("DATABASE_URL", "sqlite://"):
        run_tests()
    # DATABASE_URL is back to whatever it was before

Both steps run under the process-wide environment lock, but the lock is
*not* held while the scope body runs.  Threads that merely hold an
override do not block each other.

Failure handling:
    - **Apply fails** (bad key or value) — ``EnvironmentError`` reaches
      the caller and no guard exists, so there is nothing to restore.
    - **Restore fails** — the scope is already over and the environment
      no longer matches what callers were promised.  This is escalated
      per ``Settings.on_restore_failure``: raise ``RestoreError`` (a
      ``BaseException``, so ``except Exception`` cannot hide it) or
      abort the process.
"""

import itertools
import os
import sys
from collections.abc import Generator, Mapping
from contextlib import ExitStack, contextmanager
from types import TracebackType
from typing import Self

from scoped_env.config import RestoreFailurePolicy, get_settings
from scoped_env.env import PROCESS_ENV, EnvironmentAccessor, EnvironmentError
from scoped_env.lock import environment_lock
from scoped_env.logging import LogLevel, audit_log
from scoped_env.ordering import override_stack


class RestoreError(BaseException):
    """Raise when a guard cannot put its variable back.

    The environment is no longer in the state the guard promised, so
    every later test in the process may be polluted.  Derives from
    ``BaseException`` so that broad ``except Exception`` blocks in test
    code do not silently absorb it.
    """


_serials = itertools.count(1)


class ScopedOverride:
    """A live override of one environment variable.

    Usage::

        guard = ScopedOverride("HOME", "/tmp/home")
        try:
            ...
        finally:
            guard.release()

    or, equivalently, as a context manager.  ``release`` is idempotent.
    """

    def __init__(
        self,
        key: str,
        value: str | None,
        *,
        accessor: EnvironmentAccessor | None = None,
    ) -> None:
        """Capture the current value of *key* and apply *value*.

        Args:
            key: The environment variable to override.
            value: The value to apply, or None to remove the variable
                for the duration of the scope.
            accessor: The table to write through (defaults to the
                process environment).

        Raises:
            EnvironmentError: If the platform rejects the key or value.
                Nothing is changed and nothing is owed.
            ConfigError: If the package settings cannot be loaded.  Raised
                before the environment is touched.

        """
        # Settings snapshot used by release().
        self._settings = get_settings()
        self._accessor = PROCESS_ENV if accessor is None else accessor
        self._key = key
        self._value = value
        self._restored = False
        with environment_lock():
            self._previous = self._accessor.get(key)
            try:
                if value is None:
                    self._accessor.unset(key)
                else:
                    self._accessor.set(key, value)
            except EnvironmentError as exc:
                audit_log.log(LogLevel.ERROR, f"apply rejected: {exc}", source="override", key=key)
                raise
            self._serial = next(_serials)
            override_stack.push(self._accessor, key, self._serial, self._previous)
            audit_log.log(
                LogLevel.DEBUG,
                f"#{self._serial} {_show(self._previous)} -> {_show(value)}",
                source="override",
                key=key,
            )

    @property
    def key(self) -> str:
        """Return the overridden variable name."""
        return self._key

    @property
    def value(self) -> str | None:
        """Return the applied value (None if the scope removed the key)."""
        return self._value

    @property
    def previous(self) -> str | None:
        """Return the value observed just before the override applied."""
        return self._previous

    @property
    def serial(self) -> int:
        """Return the process-unique serial number of this guard."""
        return self._serial

    @property
    def restored(self) -> bool:
        """Return whether ``release`` has already run."""
        return self._restored

    def get(self) -> str | None:
        """Return the live value of the overridden variable."""
        with environment_lock():
            return self._accessor.get(self._key)

    def release(self) -> None:
        """Restore the variable to its pre-override state.

        Calling this more than once is harmless; only the first call
        touches the environment.

        Raises:
            OverrideOrderError: In STRICT ordering mode, if a newer
                override of the same key is still live.  The guard stays
                live.
            RestoreError: If the restore itself fails and the policy is
                RAISE.

        """
        if self._restored:
            return
        with environment_lock():
            if self._restored:
                return
            plan = override_stack.pop(
                self._accessor,
                self._key,
                self._serial,
                mode=self._settings.ordering,
            )
            self._restored = True
            if not plan.write:
                audit_log.log(
                    LogLevel.WARNING,
                    f"#{self._serial} released out of order; restore handed to newer override",
                    source="ordering",
                    key=self._key,
                )
                return
            try:
                if plan.value is None:
                    self._accessor.unset(self._key)
                else:
                    self._accessor.set(self._key, plan.value)
            except EnvironmentError as exc:
                self._escalate(exc, self._settings.on_restore_failure)
            audit_log.log(
                LogLevel.DEBUG,
                f"#{self._serial} restored {_show(plan.value)}",
                source="restore",
                key=self._key,
            )

    def _escalate(self, exc: EnvironmentError, policy: RestoreFailurePolicy) -> None:
        msg = f"Could not restore {self._key!r} after override #{self._serial}: {exc}"
        audit_log.log(LogLevel.CRITICAL, msg, source="restore", key=self._key)
        if policy is RestoreFailurePolicy.ABORT:
            sys.stderr.write(f"scoped_env: {msg}; aborting\n")
            sys.stderr.flush()
            os.abort()
        raise RestoreError(msg) from exc

    def __enter__(self) -> Self:
        """Return the guard; the override is already applied."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Release the guard, letting any in-flight exception propagate."""
        self.release()

    def __repr__(self) -> str:
        """Return a developer-friendly representation."""
        state = "restored" if self._restored else "live"
        return f"ScopedOverride({self._key!r}, {self._value!r}, #{self._serial}, {state})"


def _show(value: str | None) -> str:
    return "<unset>" if value is None else repr(value)


def create(
    key: str,
    value: str,
    *,
    accessor: EnvironmentAccessor | None = None,
) -> ScopedOverride:
    """Set *key* to *value* until the returned guard is released.

    Raises:
        EnvironmentError: If the platform rejects the key or value.

    """
    return ScopedOverride(key, value, accessor=accessor)


def remove(key: str, *, accessor: EnvironmentAccessor | None = None) -> ScopedOverride:
    """Remove *key* until the returned guard is released."""
    return ScopedOverride(key, None, accessor=accessor)


@contextmanager
def overrides(
    values: Mapping[str, str | None],
    *,
    accessor: EnvironmentAccessor | None = None,
) -> Generator[list[ScopedOverride]]:
    """Override several variables at once.

    Guards are created in mapping order and released in reverse.  If
    any key is rejected, the ones already applied are released before
    the error propagates.

    Args:
        values: Variable names to values (None removes the variable).
        accessor: The table to write through.

    Yields:
        The live guards, in creation order.

    """
    with ExitStack() as stack:
        guards = [
            stack.enter_context(ScopedOverride(key, value, accessor=accessor))
            for key, value in values.items()
        ]
        yield guards
