"""Environment accessors — the only path to the environment table.

Every process owns one environment: a table of ``KEY=VALUE`` string
pairs.  The table is process-wide, so every thread sees (and can
clobber) the same entries.  This module wraps the table behind three
primitives:

    - **get** — the current value, or None when the key is absent.
    - **set** — install a value, or raise ``EnvironmentError`` if the
      platform refuses the key or value.
    - **unset** — remove a key; removing an absent key is a no-op.

Two accessors implement them:

    - ``EnvironmentAccessor`` — the live process table (``os.environ``).
    - ``MemoryEnvironment`` — a private dict with the same validation
      rules, for sandboxed runs and failure injection.

Accessors do no locking of their own.  Callers that need a consistent
read-modify-write hold ``scoped_env.lock.environment_lock`` around it.
"""

import os


class EnvironmentError(Exception):  # noqa: A001
    """Raise when the platform rejects an environment key or value.

    Examples: empty key, ``=`` inside a key, embedded NUL byte, or a
    non-string argument.
    """


def _check_pair(key: object, value: object) -> None:
    """Apply the platform's naming rules to a key/value pair."""
    if not isinstance(key, str) or not isinstance(value, str):
        kinds = f"{type(key).__name__}/{type(value).__name__}"
        msg = f"Environment keys and values must be str, got {kinds}"
        raise EnvironmentError(msg)
    if not key or "=" in key:
        msg = f"Illegal environment variable name: {key!r}"
        raise EnvironmentError(msg)
    if "\0" in key or "\0" in value:
        msg = f"Embedded null byte in {key!r}"
        raise EnvironmentError(msg)


class EnvironmentAccessor:
    """Live view of the process environment table.

    Stateless: every call goes straight to ``os.environ``.  All
    instances front the same table, so they compare equal and hash
    alike; ordering bookkeeping keyed by accessor treats them as one.
    """

    def get(self, key: str) -> str | None:
        """Return the value for *key*, or None if not set."""
        return os.environ.get(key)

    def set(self, key: str, value: str) -> None:
        """Set *key* to *value* (creates or overwrites).

        Raises:
            EnvironmentError: If the platform rejects the pair.  The
                table is unchanged.

        """
        try:
            os.environ[key] = value
        except (TypeError, ValueError, OSError) as exc:
            msg = f"Cannot set {key!r}: {exc}"
            raise EnvironmentError(msg) from exc

    def unset(self, key: str) -> None:
        """Remove *key*; an absent key is left alone."""
        try:
            os.environ.pop(key, None)
        except (TypeError, ValueError, OSError) as exc:
            msg = f"Cannot unset {key!r}: {exc}"
            raise EnvironmentError(msg) from exc

    def items(self) -> list[tuple[str, str]]:
        """Return all (key, value) pairs."""
        return list(os.environ.items())

    def __eq__(self, other: object) -> bool:
        """Return True for any accessor of the process table."""
        return type(other) is type(self)

    def __hash__(self) -> int:
        """Hash by type, consistent with ``__eq__``."""
        return hash(type(self))

    def __repr__(self) -> str:
        """Return a developer-friendly representation."""
        return "EnvironmentAccessor(process)"


class MemoryEnvironment(EnvironmentAccessor):
    """A private, dict-backed environment table.

    Each instance is independent: writes never reach ``os.environ``
    and never touch another instance.  Keys and values go through the
    same validation the platform applies, so failure paths behave as
    they would against the real table.
    """

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        """Create a table, optionally pre-populated.

        Args:
            initial: Starting variables (copied, not referenced).

        """
        self._vars: dict[str, str] = dict(initial) if initial else {}

    def get(self, key: str) -> str | None:
        """Return the value for *key*, or None if not set."""
        return self._vars.get(key)

    def set(self, key: str, value: str) -> None:
        """Set *key* to *value*, validating like the platform does."""
        _check_pair(key, value)
        self._vars[key] = value

    def unset(self, key: str) -> None:
        """Remove *key*; an absent key is left alone."""
        self._vars.pop(key, None)

    def items(self) -> list[tuple[str, str]]:
        """Return all (key, value) pairs."""
        return list(self._vars.items())

    def __len__(self) -> int:
        """Return the number of variables."""
        return len(self._vars)

    # Identity semantics: two sandboxes are never the same table.
    __eq__ = object.__eq__
    __hash__ = object.__hash__

    def __repr__(self) -> str:
        """Return a developer-friendly representation."""
        return f"MemoryEnvironment({len(self._vars)} vars)"


PROCESS_ENV = EnvironmentAccessor()
