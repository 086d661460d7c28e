"""Tests for scoped overrides.

A guard applies a value when created and puts the previous value (or
absence) back when released.  Release happens exactly once, whether the
scope ends normally or by an exception, and a failed restore is never
silently ignored.
"""

import os

import pytest

from scoped_env import (
    PROCESS_ENV,
    ConfigError,
    EnvironmentError,
    LogLevel,
    MemoryEnvironment,
    RestoreError,
    ScopedOverride,
    audit_log,
    configure,
    create,
    override_stack,
    overrides,
    remove,
    reset_settings,
)
from scoped_env.config import ENV_ORDERING

KEY = "SETEST_GUARD"
OTHER_KEY = "SETEST_GUARD_OTHER"


class FlakyEnvironment(MemoryEnvironment):
    """A memory table whose writes can be made to fail on demand."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        """Create a table that starts out healthy."""
        super().__init__(initial)
        self.broken = False

    def set(self, key: str, value: str) -> None:
        """Fail when broken, otherwise behave normally."""
        if self.broken:
            msg = "table is read-only"
            raise EnvironmentError(msg)
        super().set(key, value)

    def unset(self, key: str) -> None:
        """Fail when broken, otherwise behave normally."""
        if self.broken:
            msg = "table is read-only"
            raise EnvironmentError(msg)
        super().unset(key)


@pytest.fixture
def absent(monkeypatch: pytest.MonkeyPatch) -> str:
    """Return KEY, guaranteed unset for the test."""
    monkeypatch.delenv(KEY, raising=False)
    return KEY


# -- Lifecycle ---------------------------------------------------------------


class TestLifecycle:
    """Verify apply on creation and restore on release."""

    def test_create_applies_value(self, absent: str) -> None:
        """The new value should be visible as soon as the guard exists."""
        guard = create(absent, "hello")
        try:
            assert os.environ[absent] == "hello"
        finally:
            guard.release()

    def test_restore_to_absent(self, absent: str) -> None:
        """A previously unset key should be unset again after release."""
        guard = create(absent, "hello")
        guard.release()
        assert absent not in os.environ

    def test_restore_previous(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A previously set key should get its old value back."""
        monkeypatch.setenv(KEY, "old")
        guard = create(KEY, "new")
        assert os.environ[KEY] == "new"
        guard.release()
        assert os.environ[KEY] == "old"

    def test_restore_previous_empty_string(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """An empty previous value is restored as empty, not removed."""
        monkeypatch.setenv(KEY, "")
        create(KEY, "new").release()
        assert os.environ[KEY] == ""

    def test_captures_previous(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """The guard should record what it replaced."""
        monkeypatch.setenv(KEY, "old")
        guard = create(KEY, "new")
        guard.release()
        assert guard.key == KEY
        assert guard.value == "new"
        assert guard.previous == "old"

    def test_previous_none_when_absent(self, absent: str) -> None:
        """An absent key should be recorded as None."""
        guard = create(absent, "new")
        guard.release()
        assert guard.previous is None

    def test_release_sets_restored(self, absent: str) -> None:
        """The restored flag should flip once, on release."""
        guard = create(absent, "v")
        assert not guard.restored
        guard.release()
        assert guard.restored

    def test_release_twice_is_noop(self, absent: str) -> None:
        """A second release should not touch the environment."""
        guard = create(absent, "v")
        guard.release()
        PROCESS_ENV.set(absent, "set-after-release")
        guard.release()
        assert os.environ[absent] == "set-after-release"
        PROCESS_ENV.unset(absent)

    def test_release_twice_logs_one_restore(self, absent: str) -> None:
        """Restoration should be recorded exactly once."""
        guard = create(absent, "v")
        guard.release()
        guard.release()
        assert len(audit_log.filter(source="restore", key=absent)) == 1

    def test_get_reads_live_value(self, absent: str) -> None:
        """Guard.get should return whatever the table holds now."""
        with create(absent, "hello") as guard:
            assert guard.get() == "hello"
            PROCESS_ENV.set(absent, "changed")
            assert guard.get() == "changed"
        assert guard.get() is None

    def test_constructor_matches_create(self, absent: str) -> None:
        """ScopedOverride(key, value) is the same as create(key, value)."""
        with ScopedOverride(absent, "direct"):
            assert os.environ[absent] == "direct"
        assert absent not in os.environ

    def test_serials_increase(self, absent: str) -> None:
        """Each guard should get a larger serial than the one before."""
        with create(absent, "a") as first, create(absent, "b") as second:
            assert second.serial > first.serial

    def test_repr_shows_state(self, absent: str) -> None:
        """The repr should show the key and whether it is live."""
        guard = create(absent, "v")
        assert "live" in repr(guard)
        guard.release()
        assert "restored" in repr(guard)
        assert absent in repr(guard)


# -- Context manager ---------------------------------------------------------


class TestContextManager:
    """Verify release on every exit path of a with-block."""

    def test_with_restores(self, absent: str) -> None:
        """Leaving the block should restore."""
        with create(absent, "scoped") as guard:
            assert os.environ[absent] == "scoped"
        assert guard.restored
        assert absent not in os.environ

    def test_with_restores_on_error(self, absent: str) -> None:
        """An exception in the block should still restore, and propagate."""
        msg = "boom"
        with pytest.raises(RuntimeError, match=msg), create(absent, "scoped"):
            raise RuntimeError(msg)
        assert absent not in os.environ

    def test_explicit_release_inside_block(self, absent: str) -> None:
        """An early release plus the block exit should restore only once."""
        with create(absent, "scoped") as guard:
            guard.release()
            assert absent not in os.environ
        assert len(audit_log.filter(source="restore", key=absent)) == 1

    def test_early_return_restores(self, absent: str) -> None:
        """Returning from inside the block should restore."""

        def read() -> str:
            with create(absent, "inside"):
                return os.environ[absent]

        assert read() == "inside"
        assert absent not in os.environ


# -- Nesting -----------------------------------------------------------------


class TestNesting:
    """Verify same-key nesting restores layer by layer."""

    def test_nested_same_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Inner release restores the outer value; outer restores the original."""
        monkeypatch.setenv(KEY, "original")
        outer = create(KEY, "v1")
        inner = create(KEY, "v2")
        assert os.environ[KEY] == "v2"
        inner.release()
        assert os.environ[KEY] == "v1"
        outer.release()
        assert os.environ[KEY] == "original"

    def test_nested_with_blocks(self, absent: str) -> None:
        """Nested with-blocks should unwind in order."""
        with create(absent, "v1"):
            with create(absent, "v2"):
                assert os.environ[absent] == "v2"
            assert os.environ[absent] == "v1"
        assert absent not in os.environ

    def test_nested_distinct_keys(self, absent: str, monkeypatch: pytest.MonkeyPatch) -> None:
        """Overrides of different keys should not interfere."""
        monkeypatch.setenv(OTHER_KEY, "other")
        with create(absent, "a"), create(OTHER_KEY, "b"):
            assert os.environ[absent] == "a"
            assert os.environ[OTHER_KEY] == "b"
        assert absent not in os.environ
        assert os.environ[OTHER_KEY] == "other"

    def test_stack_empties_after_release(self, absent: str) -> None:
        """No bookkeeping should outlive the guards."""
        with create(absent, "v1"), create(absent, "v2"):
            expected_depth = 2
            assert override_stack.depth(PROCESS_ENV, absent) == expected_depth
        assert override_stack.depth(PROCESS_ENV, absent) == 0


# -- Construction failure ----------------------------------------------------


class TestConstructionFailure:
    """Verify a rejected apply leaves no residue and owes no restore."""

    def test_invalid_key_raises(self) -> None:
        """A key the platform refuses should raise EnvironmentError."""
        with pytest.raises(EnvironmentError):
            create("BAD=KEY", "value")

    def test_invalid_value_leaves_previous(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A refused value should leave the old value in place."""
        monkeypatch.setenv(KEY, "untouched")
        with pytest.raises(EnvironmentError):
            create(KEY, "bad\0value")
        assert os.environ[KEY] == "untouched"

    def test_invalid_value_leaves_absent(self, absent: str) -> None:
        """A refused value should leave an absent key absent."""
        with pytest.raises(EnvironmentError):
            create(absent, "bad\0value")
        assert absent not in os.environ

    def test_failed_create_registers_nothing(self, absent: str) -> None:
        """A failed create should leave no ordering bookkeeping behind."""
        with pytest.raises(EnvironmentError):
            create(absent, "bad\0value")
        assert override_stack.depth(PROCESS_ENV, absent) == 0

    def test_failed_create_is_logged(self, absent: str) -> None:
        """A rejected apply should leave an ERROR entry in the audit log."""
        with pytest.raises(EnvironmentError):
            create(absent, "bad\0value")
        assert audit_log.filter(min_level=LogLevel.ERROR, key=absent)


# -- Removal scopes ----------------------------------------------------------


class TestRemove:
    """Verify scopes that force a variable to be absent."""

    def test_remove_unsets_then_restores(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """The key should be absent in the scope and back afterwards."""
        monkeypatch.setenv(KEY, "present")
        with remove(KEY) as guard:
            assert KEY not in os.environ
            assert guard.value is None
        assert os.environ[KEY] == "present"

    def test_remove_absent_key(self, absent: str) -> None:
        """Removing an absent key is allowed and stays absent."""
        with remove(absent):
            assert absent not in os.environ
        assert absent not in os.environ

    def test_remove_nested_in_override(self, absent: str) -> None:
        """A removal inside an override should give the override back."""
        with create(absent, "outer"):
            with remove(absent):
                assert absent not in os.environ
            assert os.environ[absent] == "outer"


# -- Several keys ------------------------------------------------------------


class TestOverrides:
    """Verify the multi-key context manager."""

    def test_applies_and_restores_all(self, absent: str, monkeypatch: pytest.MonkeyPatch) -> None:
        """Every key should be applied inside and restored outside."""
        monkeypatch.setenv(OTHER_KEY, "before")
        with overrides({absent: "a", OTHER_KEY: None}) as guards:
            assert [g.key for g in guards] == [absent, OTHER_KEY]
            assert os.environ[absent] == "a"
            assert OTHER_KEY not in os.environ
        assert absent not in os.environ
        assert os.environ[OTHER_KEY] == "before"

    def test_partial_failure_unwinds(self, absent: str) -> None:
        """A rejected key should release the ones already applied."""
        with pytest.raises(EnvironmentError), overrides({absent: "ok", "BAD=KEY": "x"}):
            pytest.fail("body must not run")
        assert absent not in os.environ

    def test_memory_accessor(self) -> None:
        """Overrides should write through the accessor they are given."""
        env = MemoryEnvironment({"A": "1"})
        with overrides({"A": "2", "B": "3"}, accessor=env):
            assert dict(env.items()) == {"A": "2", "B": "3"}
        assert dict(env.items()) == {"A": "1"}


# -- Restore failure ---------------------------------------------------------


class TestRestoreFailure:
    """Verify a failed restore is escalated, never swallowed."""

    def test_raise_policy(self) -> None:
        """By default a failed restore should raise RestoreError."""
        env = FlakyEnvironment({KEY: "old"})
        guard = create(KEY, "new", accessor=env)
        env.broken = True
        with pytest.raises(RestoreError) as info:
            guard.release()
        assert isinstance(info.value.__cause__, EnvironmentError)
        assert guard.restored

    def test_restore_error_escapes_except_exception(self) -> None:
        """RestoreError should not be caught by a broad except Exception."""
        env = FlakyEnvironment()
        guard = remove(KEY, accessor=env)
        env.broken = True
        caught_by_exception = False
        with pytest.raises(RestoreError):
            try:
                guard.release()
            except Exception:  # noqa: BLE001
                caught_by_exception = True
        assert not caught_by_exception

    def test_second_release_after_failure_is_noop(self) -> None:
        """After a failed restore the guard is spent; releasing again is harmless."""
        env = FlakyEnvironment({KEY: "old"})
        guard = create(KEY, "new", accessor=env)
        env.broken = True
        with pytest.raises(RestoreError):
            guard.release()
        guard.release()
        assert override_stack.depth(env, KEY) == 0

    def test_failure_is_logged_critical(self) -> None:
        """A failed restore should leave a CRITICAL audit entry."""
        env = FlakyEnvironment({KEY: "old"})
        guard = create(KEY, "new", accessor=env)
        env.broken = True
        with pytest.raises(RestoreError):
            guard.release()
        entries = audit_log.filter(min_level=LogLevel.CRITICAL)
        assert len(entries) == 1
        assert entries[0].key == KEY

    def test_abort_policy(
        self,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """The ABORT policy should report on stderr and call os.abort."""
        aborted: list[bool] = []
        monkeypatch.setattr(os, "abort", lambda: aborted.append(True))
        configure(on_restore_failure="abort")
        env = FlakyEnvironment({KEY: "old"})
        guard = create(KEY, "new", accessor=env)
        env.broken = True
        # The patched abort returns, so the RAISE path still fires afterwards.
        with pytest.raises(RestoreError):
            guard.release()
        assert aborted == [True]
        assert "aborting" in capsys.readouterr().err


# -- Settings ----------------------------------------------------------------


class TestSettingsSnapshot:
    """Verify settings are resolved when a guard is created, not on release."""

    def test_overriding_settings_variable_still_restores(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A guard over SCOPED_ENV_ORDERING must release cleanly whatever it holds."""
        monkeypatch.delenv(ENV_ORDERING, raising=False)
        reset_settings()
        guard = create(ENV_ORDERING, "bogus")
        guard.release()
        assert guard.restored
        assert ENV_ORDERING not in os.environ

    def test_release_does_not_reload_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Invalid settings appearing after creation must not block the restore."""
        monkeypatch.delenv(ENV_ORDERING, raising=False)
        monkeypatch.delenv(KEY, raising=False)
        reset_settings()
        guard = create(KEY, "v")
        monkeypatch.setenv(ENV_ORDERING, "bogus")
        reset_settings()
        guard.release()
        assert guard.restored
        assert KEY not in os.environ

    def test_invalid_settings_fail_before_apply(
        self, absent: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Unloadable settings should abort creation with nothing applied."""
        monkeypatch.setenv(ENV_ORDERING, "bogus")
        reset_settings()
        with pytest.raises(ConfigError):
            create(absent, "v")
        assert absent not in os.environ
        assert override_stack.depth(PROCESS_ENV, absent) == 0
