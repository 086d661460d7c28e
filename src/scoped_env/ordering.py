"""Release ordering for overrides of the same variable.

Overrides of one key form a stack: each new guard captures the value
left by the guard below it, so restores only compose correctly when
guards are released newest-first (LIFO).

**Analogy:** Stacking transparent sheets on an overhead projector.
Each sheet hides the one below.  Lift the top sheet and the one beneath
shows through.  Pull a sheet out of the *middle* and nothing visible
changes — the top sheet still covers everything — but the sheet above
the gap now sits directly on the one below the gap.

That is exactly how an out-of-order release is handled: the released
guard is spliced out of the stack without touching the environment,
and the guard above it inherits its restore value.  When that guard is
eventually released it restores what the spliced guard would have.

Three enforcement modes:
    - **strict** — reject the out-of-order release (nothing changes).
    - **warn** — splice, and record the violation.
    - **off** — splice silently.

The stack is not thread-safe on its own; callers hold the environment
lock around every push and pop.
"""

import threading
from collections import deque
from collections.abc import Hashable
from dataclasses import dataclass, field
from enum import StrEnum


DEFAULT_VIOLATION_CAPACITY = 1000


class OrderingMode(StrEnum):
    """Enforcement mode for same-key release ordering.

    STRICT rejects violations outright; WARN records but allows; OFF skips.
    """

    STRICT = "strict"
    WARN = "warn"
    OFF = "off"


class OverrideOrderError(Exception):
    """Raise when a guard is released before a newer guard on its key.

    Only raised in STRICT mode.  The guard stays live and can be
    released again once the newer guards are gone.
    """


@dataclass(frozen=True)
class OrderingViolation:
    """Record of a single out-of-order release.

    Captured when a guard is released while *newer_serials* (guards
    created later on the same key) are still live.
    """

    key: str
    released_serial: int
    newer_serials: tuple[int, ...]
    thread: str = field(default_factory=lambda: threading.current_thread().name)


@dataclass
class _Frame:
    serial: int
    restore: str | None


@dataclass(frozen=True)
class ReleasePlan:
    """What a release must do to the environment.

    If ``write`` is False, the release is a splice and the table stays
    as it is.  Otherwise ``value`` is written back (None means unset).
    """

    write: bool
    value: str | None


class OverrideStack:
    """Per-key LIFO bookkeeping of live guards.

    Stacks are keyed by ``(table, key)`` where *table* is the accessor
    the guard writes through, so sandboxed tables never mix with the
    process table.
    """

    def __init__(self, *, capacity: int = DEFAULT_VIOLATION_CAPACITY) -> None:
        """Create empty bookkeeping keeping at most *capacity* violations."""
        self._stacks: dict[tuple[Hashable, str], list[_Frame]] = {}
        self._violations: deque[OrderingViolation] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        """Return the maximum number of retained violations."""
        maxlen = self._violations.maxlen
        assert maxlen is not None  # noqa: S101
        return maxlen

    @capacity.setter
    def capacity(self, value: int) -> None:
        """Resize the violation record, keeping the newest entries."""
        if value < 1:
            msg = f"Violation capacity must be positive, got {value}"
            raise ValueError(msg)
        self._violations = deque(self._violations, maxlen=value)

    def push(self, table: Hashable, key: str, serial: int, restore: str | None) -> None:
        """Register a newly applied guard on top of its key's stack.

        Args:
            table: The accessor the guard writes through.
            key: The environment variable.
            serial: The guard's unique serial number.
            restore: The value to put back when the guard is released.

        """
        self._stacks.setdefault((table, key), []).append(_Frame(serial, restore))

    def pop(
        self,
        table: Hashable,
        key: str,
        serial: int,
        *,
        mode: OrderingMode,
    ) -> ReleasePlan:
        """Unregister a guard and decide how its release restores.

        Args:
            table: The accessor the guard writes through.
            key: The environment variable.
            serial: The guard's serial number.
            mode: How to treat an out-of-order release.

        Returns:
            The plan the caller carries out while still holding the lock.

        Raises:
            OverrideOrderError: In STRICT mode, if newer guards on the
                same key are still live.
            KeyError: If *serial* is not registered on *key*.

        """
        frames = self._stacks.get((table, key), [])
        index = next((i for i, f in enumerate(frames) if f.serial == serial), None)
        if index is None:
            msg = f"Override #{serial} is not registered on {key!r}"
            raise KeyError(msg)

        frame = frames[index]
        newer = tuple(f.serial for f in frames[index + 1 :])
        if newer:
            violation = OrderingViolation(
                key=key,
                released_serial=serial,
                newer_serials=newer,
            )
            if mode is OrderingMode.STRICT:
                self._violations.append(violation)
                msg = (
                    f"Override #{serial} of {key!r} released while newer "
                    f"overrides {list(newer)} are live"
                )
                raise OverrideOrderError(msg)
            if mode is OrderingMode.WARN:
                self._violations.append(violation)
            frames[index + 1].restore = frame.restore
            del frames[index]
            return ReleasePlan(write=False, value=None)

        del frames[index]
        if not frames:
            del self._stacks[(table, key)]
        return ReleasePlan(write=True, value=frame.restore)

    def depth(self, table: Hashable, key: str) -> int:
        """Return the number of live guards on *key*."""
        return len(self._stacks.get((table, key), []))

    def live_keys(self) -> list[str]:
        """Return the keys that currently have live guards."""
        return sorted({key for _, key in self._stacks})

    def violations(self) -> list[OrderingViolation]:
        """Return the retained violations, oldest first."""
        return list(self._violations)

    def clear_violations(self) -> None:
        """Forget all recorded violations."""
        self._violations.clear()


override_stack = OverrideStack()
