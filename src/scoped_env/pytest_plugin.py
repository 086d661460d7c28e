"""pytest integration.

Registered through the ``pytest11`` entry point, so installing the
package is enough to get the ``env_override`` fixture::

    def test_reads_home(env_override):
        env_override.set("HOME", "/tmp/home")
        assert load_config().home == "/tmp/home"

Every guard the fixture hands out is released at teardown, newest
first, even when the test fails.

Two ini options configure the package for the whole session:
``scoped_env_ordering`` and ``scoped_env_on_restore_failure``.
"""

from collections.abc import Generator
from contextlib import ExitStack

import pytest

from scoped_env.config import configure
from scoped_env.env import EnvironmentAccessor
from scoped_env.guard import ScopedOverride


class OverrideFactory:
    """Hand out guards and release them all at the end of a test."""

    def __init__(self, *, accessor: EnvironmentAccessor | None = None) -> None:
        """Create a factory writing through *accessor*."""
        self._accessor = accessor
        self._guards: list[ScopedOverride] = []

    @property
    def guards(self) -> list[ScopedOverride]:
        """Return the guards created so far, oldest first."""
        return list(self._guards)

    def set(self, key: str, value: str) -> ScopedOverride:
        """Set *key* to *value* until teardown."""
        guard = ScopedOverride(key, value, accessor=self._accessor)
        self._guards.append(guard)
        return guard

    def unset(self, key: str) -> ScopedOverride:
        """Remove *key* until teardown."""
        guard = ScopedOverride(key, None, accessor=self._accessor)
        self._guards.append(guard)
        return guard

    def release_all(self) -> None:
        """Release every guard, newest first.  Safe to call repeatedly.

        A failing release does not stop the others.  Once every guard
        has been tried, the last error propagates with earlier ones
        chained as its context.  Guards that are
        still live afterwards (rejected in STRICT ordering mode) stay
        in the factory for a later call.
        """
        guards, self._guards = self._guards, []
        try:
            with ExitStack() as stack:
                for guard in guards:
                    stack.callback(guard.release)
        finally:
            self._guards = [g for g in guards if not g.restored] + self._guards


@pytest.fixture
def env_override() -> Generator[OverrideFactory]:
    """Override process environment variables for one test."""
    factory = OverrideFactory()
    try:
        yield factory
    finally:
        factory.release_all()


def pytest_addoption(parser: pytest.Parser) -> None:
    """Register the ini options."""
    parser.addini(
        "scoped_env_ordering",
        help="How out-of-order same-key releases are treated: strict, warn or off.",
        default="",
    )
    parser.addini(
        "scoped_env_on_restore_failure",
        help="How a failed restore is escalated: raise or abort.",
        default="",
    )


def pytest_configure(config: pytest.Config) -> None:
    """Apply the ini options, if any were given."""
    changes: dict[str, object] = {}
    if ordering := str(config.getini("scoped_env_ordering")).strip():
        changes["ordering"] = ordering
    if policy := str(config.getini("scoped_env_on_restore_failure")).strip():
        changes["on_restore_failure"] = policy
    if changes:
        configure(**changes)
