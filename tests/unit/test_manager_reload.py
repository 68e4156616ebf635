"""
Tests for rolling reloads in ClusterManager.

Covers:
- Happy path: every slot gets a new process, slot ids are kept
- Availability: the running count never drops below desired - 1
- Failure mode: replacements that exit early or never become ready
- Ordering: reloads and scale commands arriving mid-reload
"""

import pytest

from herd.cluster import Operation, ReadyTimeout, Reload, ScaleBy, Stop, WorkerState
from tests.fakes import make_exit, make_ready, starting


def drain_stepwise(manager, floor):
    """Processes queued events one by one, checking the running count after each."""
    seen = []
    while manager.process_next(timeout=0):
        running = manager.running_count()
        seen.append(running)
        assert running >= floor
    return seen


class TestRollingReload:
    """Test the happy path of a reload."""

    @pytest.mark.parametrize("kind", ["rolling", "full"])
    def test_every_worker_is_replaced(self, manager, kind):
        manager.form(3)
        before = {slot: h.pid for slot, h in manager.workers.items()}

        manager.submit(Reload(kind))
        manager.pump()

        after = {slot: h.pid for slot, h in manager.workers.items()}
        assert manager.operation is Operation.NONE
        assert sorted(after) == sorted(before)
        assert set(after.values()).isdisjoint(before.values())
        assert manager.running_count() == 3

    def test_running_count_never_drops_below_floor(self, manager):
        manager.form(3)

        manager.submit(Reload())
        seen = drain_stepwise(manager, floor=2)

        assert seen
        assert manager.operation is Operation.NONE

    def test_single_worker_is_replaced_without_gap(self, manager):
        manager.form(1)
        original = manager.workers[1]

        manager.submit(Reload())
        drain_stepwise(manager, floor=1)

        assert manager.workers[1].pid != original.pid
        assert original.state is WorkerState.EXITED

    def test_incumbent_retires_only_after_replacement_runs(self, manager, launcher):
        manager.form(2)
        launcher.auto_ready = False
        incumbent = manager.workers[1]

        manager.submit(Reload())
        manager.pump()

        replacement = starting(manager)[0]
        assert replacement.slot_id == 1
        assert manager.workers[1] is incumbent
        assert launcher.terminated == []

        make_ready(manager, replacement)

        assert manager.workers[1] is replacement
        assert incumbent.state is WorkerState.EXITED
        # The next slot is already being replaced.
        assert starting(manager)[0].slot_id == 2

    def test_reload_of_empty_pool_completes(self, manager):
        manager.form(0)

        manager.submit(Reload())
        manager.pump()

        assert manager.operation is Operation.NONE


class TestReloadFailures:
    """Test replacements that never make it to running."""

    def test_replacement_exiting_early_keeps_incumbent(self, manager, launcher):
        manager.form(2)
        launcher.auto_ready = False
        incumbent = manager.workers[1]

        manager.submit(Reload())
        manager.pump()
        make_exit(manager, starting(manager)[0], exit_code=1)

        assert manager.workers[1] is incumbent
        assert incumbent.state is WorkerState.RUNNING

        # The reload moves on to slot 2.
        replacement = starting(manager)[0]
        assert replacement.slot_id == 2
        make_ready(manager, replacement)

        assert manager.operation is Operation.NONE
        assert manager.workers[1] is incumbent
        assert manager.workers[2] is replacement

    def test_ready_timeout_kills_replacement(self, manager, launcher):
        manager.form(1)
        launcher.auto_ready = False
        incumbent = manager.workers[1]

        manager.submit(Reload())
        manager.pump()
        replacement = starting(manager)[0]

        manager.submit(ReadyTimeout(replacement.slot_id, replacement.pid))
        manager.pump()

        assert launcher.killed == [replacement.pid]
        assert replacement.state is WorkerState.EXITED
        assert manager.workers[1] is incumbent
        assert manager.operation is Operation.NONE

    def test_stale_ready_timeout_is_ignored(self, manager):
        manager.form(1)
        manager.submit(Reload())
        manager.pump()
        current = manager.workers[1]

        manager.submit(ReadyTimeout(1, 1002))
        manager.pump()

        assert manager.workers[1] is current
        assert current.state is WorkerState.RUNNING

    def test_incumbent_crash_mid_reload_is_covered_by_replacement(self, manager, launcher):
        manager.form(2)
        launcher.auto_ready = False
        incumbent = manager.workers[1]

        manager.submit(Reload())
        manager.pump()
        replacement = starting(manager)[0]

        make_exit(manager, incumbent, exit_code=1)

        # No extra spawn for slot 1: the replacement takes it over.
        assert starting(manager) == [replacement]

        make_ready(manager, replacement)
        make_ready(manager, starting(manager)[0])

        assert manager.operation is Operation.NONE
        assert manager.workers[1] is replacement
        assert len(manager.workers) == 2

    def test_spawn_retries_exhausted_keeps_incumbent(self, manager, launcher):
        manager.form(1)
        incumbent = manager.workers[1]
        launcher.fail_next = 3

        manager.submit(Reload())
        manager.pump()

        assert manager.operation is Operation.NONE
        assert manager.workers[1] is incumbent
        assert manager.desired_count == 1


class TestReloadOrdering:
    """Test commands arriving while a reload is in flight."""

    def test_second_reload_is_queued_and_third_coalesced(self, manager, launcher):
        manager.form(2)

        manager.submit(Reload())
        manager.submit(Reload("full"))
        manager.submit(Reload())
        manager.pump()

        # Initial pool, then two full reload passes.
        assert len(launcher.spawned) == 6
        assert manager.operation is Operation.NONE
        assert len(manager.workers) == 2

    def test_scale_up_waits_for_reload(self, manager, launcher):
        manager.form(2)
        launcher.auto_ready = False

        manager.submit(Reload())
        manager.submit(ScaleBy(+1))
        manager.pump()

        assert manager.operation is Operation.RELOADING
        assert manager.desired_count == 2

        while starting(manager):
            handle = starting(manager)[0]
            if handle.slot_id == 3:
                break
            make_ready(manager, handle)

        assert manager.desired_count == 3
        assert manager.operation is Operation.SCALING_UP

    def test_stop_preempts_reload(self, manager, launcher):
        manager.form(2)
        launcher.auto_ready = False

        manager.submit(Reload())
        manager.pump()
        replacement = starting(manager)[0]

        manager.submit(Stop())
        manager.pump()

        assert manager.operation is Operation.STOPPING
        assert replacement.state is WorkerState.EXITED
        assert manager.live_processes() == []
        assert manager.workers == {}
