import os
import time
import queue
import logging
import threading
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Optional

from herd.config import effective_settings
from herd.cluster import persistence
from herd.cluster.commands import (
    Operation, ReadyTimeout, Reload, RetireTimeout, ScaleBy, Stop, WorkerExited, WorkerReady,
)
from herd.cluster.errors import ReloadTimeout, SpawnError, UnexpectedExit
from herd.cluster.handle import WorkerHandle, WorkerState
from herd.cluster.launcher import ProcessLauncher
from herd.cluster.shutdown import ShutdownCoordinator

log = logging.getLogger(__name__)


class ClusterManager:
    """
    Owns the worker pool and keeps it converged to the desired size.

    All mutations happen in `dispatch`, which is only ever called from the
    control thread. Signals, observer threads and timers talk to the manager
    exclusively through `submit`, so operations are applied one at a time in
    the order they were received.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        launcher: Any = None,
        listener: Any = None,
        pid_file: Optional[Path] = None,
    ) -> None:
        self.config: Dict[str, Any] = dict(config) if config is not None else effective_settings.as_dict()
        self.events: "queue.SimpleQueue[Any]" = queue.SimpleQueue()
        self.launcher = launcher or ProcessLauncher(self.submit, self.config, listener=listener)
        self.pid_file = pid_file
        self.master_pid = os.getpid()

        self.min_workers = int(self.config.get("MIN_WORKERS", 0))
        self.max_workers = int(self.config.get("MAX_WORKERS", 64))
        self.spawn_retry_limit = max(1, int(self.config.get("SPAWN_RETRY_LIMIT", 3)))
        self.reload_timeout = float(self.config.get("RELOAD_TIMEOUT_SECONDS", 30))
        self.drain_timeout = float(self.config.get("DRAIN_TIMEOUT_SECONDS", 10))
        self.kill_timeout = float(self.config.get("KILL_TIMEOUT_SECONDS", 5))
        self.crash_loop_window = float(self.config.get("CRASH_LOOP_WINDOW_SECONDS", 5))

        self.desired_count = 0
        self.workers: Dict[int, WorkerHandle] = {}
        self.operation = Operation.NONE
        self.shutdown = ShutdownCoordinator(self, kill_timeout=self.kill_timeout)

        # Every child that has not been reaped yet, keyed by pid. This includes
        # retiring incumbents and aborted replacements that are no longer in `workers`.
        self._processes: Dict[int, WorkerHandle] = {}
        self._pending: Deque[Any] = deque()
        self._next_slot = 1
        self._forming = False

        self._reload_queue: Deque[int] = deque()
        self._replacement: Optional[WorkerHandle] = None
        self._retiring: Optional[WorkerHandle] = None
        self._reload_timer: Optional[threading.Timer] = None
        # Escalation timers for workers sent SIGTERM outside of a stop, keyed by pid.
        self._retire_timers: Dict[int, threading.Timer] = {}

    #* --- Event Queue ---
    def submit(self, event: Any) -> None:
        """Enqueues a command or event. Safe to call from signal handlers and other threads."""
        self.events.put(event)

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """
        Takes one event off the queue and dispatches it.

        :param timeout: Seconds to block waiting for an event; None blocks forever.
        :return: True if an event was processed, False on timeout.
        """
        try:
            event = self.events.get(timeout=timeout)
        except queue.Empty:
            return False
        self.dispatch(event)
        return True

    def pump(self) -> int:
        """Dispatches every queued event without blocking and returns how many were handled."""
        handled = 0
        while True:
            try:
                event = self.events.get_nowait()
            except queue.Empty:
                return handled
            self.dispatch(event)
            handled += 1

    #* --- Views ---
    def live_processes(self) -> List[WorkerHandle]:
        return list(self._processes.values())

    def running_count(self) -> int:
        return sum(1 for h in self.workers.values() if h.state is WorkerState.RUNNING)

    def forget(self, handles: Iterable[WorkerHandle]) -> None:
        """Stops tracking children whose exit will never be observed."""
        for handle in handles:
            self._processes.pop(handle.pid, None)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "master": self.master_pid,
            "operation": self.operation.value,
            "desired": self.desired_count,
            "workers": [h.as_dict() for _, h in sorted(self.workers.items())],
        }

    #* --- Dispatch ---
    def dispatch(self, event: Any) -> None:
        """The single entry point for every mutation of cluster state."""
        if isinstance(event, WorkerReady):
            self._on_ready(event)
        elif isinstance(event, WorkerExited):
            self._on_exited(event)
        elif isinstance(event, ReadyTimeout):
            self._on_ready_timeout(event)
        elif isinstance(event, Stop):
            self._on_stop()
        elif self.operation is Operation.STOPPING:
            log.info(f"Ignoring {event} while stopping.")
        elif isinstance(event, RetireTimeout):
            self._on_retire_timeout(event)
        elif isinstance(event, ScaleBy):
            self._on_scale(event)
        elif isinstance(event, Reload):
            self._on_reload(event)
        else:
            log.warning(f"Ignoring unknown event: {event!r}")

    def _defer(self, command: Any) -> None:
        log.info(f"Operation '{self.operation.value}' in progress, queueing {command}.")
        self._pending.append(command)

    def _finish_operation(self) -> None:
        log.info(
            f"Operation '{self.operation.value}' complete: "
            f"{len(self.workers)} workers running (desired {self.desired_count})."
        )
        self.operation = Operation.NONE
        self._write_pid_file()
        while self._pending and self.operation is Operation.NONE:
            self.dispatch(self._pending.popleft())

    def _write_pid_file(self) -> None:
        if self.pid_file is not None:
            persistence.write_pid_file(self, self.pid_file)

    #* --- Spawning ---
    def _allocate_slot(self) -> int:
        slot_id = self._next_slot
        self._next_slot += 1
        return slot_id

    def _launch(self, slot_id: int, attempts: int = 1) -> Optional[WorkerHandle]:
        """
        Spawns a worker for a slot, retrying OS-level failures up to the retry limit.

        :return: The new handle, or None once the retries are exhausted.
        :raises SpawnError: During initial cluster formation, where it is fatal.
        """
        while True:
            try:
                handle = self.launcher.spawn(slot_id, attempts=attempts)
            except SpawnError as e:
                if self._forming:
                    raise
                log.error(f"{e} (attempt {attempts}/{self.spawn_retry_limit})")
                if attempts >= self.spawn_retry_limit:
                    return None
                attempts += 1
                continue
            self._processes[handle.pid] = handle
            return handle

    def _spawn_into_slot(self, slot_id: int, attempts: int = 1) -> None:
        handle = self._launch(slot_id, attempts)
        if handle is None:
            self._give_up(slot_id)
            return
        self.workers[slot_id] = handle

    def _give_up(self, slot_id: int) -> None:
        self.desired_count = max(0, self.desired_count - 1)
        log.warning(
            f"Giving up on slot {slot_id} after {self.spawn_retry_limit} attempts. "
            f"Desired worker count reduced to {self.desired_count}."
        )

    def _retire(self, handle: WorkerHandle) -> None:
        handle.mark_stopping()
        if self.operation is not Operation.STOPPING:
            self._arm_retire_timer(handle)
        self.launcher.terminate(handle)

    def _arm_retire_timer(self, handle: WorkerHandle) -> None:
        timer = threading.Timer(self.kill_timeout, self.submit, args=(RetireTimeout(handle.slot_id, handle.pid),))
        timer.daemon = True
        self._retire_timers[handle.pid] = timer
        timer.start()

    def _cancel_retire_timer(self, pid: int) -> None:
        timer = self._retire_timers.pop(pid, None)
        if timer is not None:
            timer.cancel()

    def _on_retire_timeout(self, event: RetireTimeout) -> None:
        self._retire_timers.pop(event.pid, None)
        handle = self._processes.get(event.pid)
        if handle is None or handle.state is not WorkerState.STOPPING:
            return
        log.warning(
            f"Worker slot {handle.slot_id} (PID {handle.pid}) ignored SIGTERM for {self.kill_timeout}s, killing it."
        )
        self.launcher.kill(handle)

    #* --- Scaling ---
    def _clamp(self, count: int) -> int:
        return max(self.min_workers, min(self.max_workers, count))

    def _on_scale(self, command: ScaleBy) -> None:
        same_direction = (
            (self.operation is Operation.SCALING_UP and command.delta > 0)
            or (self.operation is Operation.SCALING_DOWN and command.delta < 0)
        )
        if self.operation is not Operation.NONE and not same_direction:
            self._defer(command)
            return

        target = self._clamp(self.desired_count + command.delta)
        if target == self.desired_count:
            log.warning(
                f"Ignoring scale by {command.delta:+d}: desired count {self.desired_count} "
                f"is already at the limit [{self.min_workers}, {self.max_workers}]."
            )
            return

        if same_direction:
            log.info(f"Coalescing scale by {command.delta:+d} into the in-flight '{self.operation.value}'.")
        else:
            self.operation = Operation.SCALING_UP if command.delta > 0 else Operation.SCALING_DOWN
        log.info(f"Scaling from {self.desired_count} to {target} workers.")
        self.desired_count = target
        self._converge()

    def _converge(self) -> None:
        """Spawns or retires workers until the active count matches the desired count."""
        active = [h for h in self.workers.values() if h.state is not WorkerState.STOPPING]
        missing = self.desired_count - len(active)

        for _ in range(missing):
            self._spawn_into_slot(self._allocate_slot())

        if missing < 0:
            # Most recently started first, keeping the long-lived workers.
            victims = sorted(active, key=lambda h: (h.started_at, h.slot_id), reverse=True)[:-missing]
            for handle in victims:
                log.info(f"Stopping worker slot {handle.slot_id} (PID {handle.pid}).")
                self._retire(handle)

        self._check_scaled()

    def _check_scaled(self) -> None:
        if self.operation not in (Operation.SCALING_UP, Operation.SCALING_DOWN):
            return
        if len(self.workers) != self.desired_count:
            return
        if all(h.state is WorkerState.RUNNING for h in self.workers.values()):
            self._finish_operation()

    #* --- Reloading ---
    def _on_reload(self, command: Reload) -> None:
        if self.operation is Operation.NONE:
            self._begin_reload(command)
        elif any(isinstance(c, Reload) for c in self._pending):
            log.info(f"A reload is already queued, coalescing {command.kind} reload.")
        else:
            self._defer(command)

    def _begin_reload(self, command: Reload) -> None:
        self.operation = Operation.RELOADING
        self._reload_queue = deque(sorted(self.workers))
        log.info(f"Starting {command.kind} reload of {len(self._reload_queue)} workers.")
        self._reload_next()

    def _reload_next(self) -> None:
        while self._reload_queue:
            slot_id = self._reload_queue.popleft()
            incumbent = self.workers.get(slot_id)
            if incumbent is None or incumbent.state is WorkerState.STOPPING:
                continue

            replacement = self._launch(slot_id)
            if replacement is None:
                log.error(str(ReloadTimeout(slot_id, "spawn retries exhausted, keeping the current worker")))
                continue

            self._replacement = replacement
            self._arm_reload_timer(replacement)
            return

        self._finish_operation()

    def _arm_reload_timer(self, handle: WorkerHandle) -> None:
        self._cancel_reload_timer()
        self._reload_timer = threading.Timer(
            self.reload_timeout, self.submit, args=(ReadyTimeout(handle.slot_id, handle.pid),)
        )
        self._reload_timer.daemon = True
        self._reload_timer.start()

    def _cancel_reload_timer(self) -> None:
        if self._reload_timer is not None:
            self._reload_timer.cancel()
            self._reload_timer = None

    def _promote_replacement(self) -> None:
        replacement = self._replacement
        self._replacement = None
        self._cancel_reload_timer()

        incumbent = self.workers.get(replacement.slot_id)
        self.workers[replacement.slot_id] = replacement
        log.info(f"Replacement for slot {replacement.slot_id} is running (PID {replacement.pid}).")

        if incumbent is None or not incumbent.is_alive:
            self._reload_next()
            return

        self._retiring = incumbent
        self._retire(incumbent)

    def _abort_replacement(self, reason: str) -> None:
        replacement = self._replacement
        self._replacement = None
        self._cancel_reload_timer()

        log.error(f"{ReloadTimeout(replacement.slot_id, reason)}. Keeping the current worker.")
        if replacement.is_alive:
            replacement.mark_stopping()
            self.launcher.kill(replacement)

        # The incumbent may have died while its replacement was starting.
        if replacement.slot_id not in self.workers:
            active = sum(1 for h in self.workers.values() if h.state is not WorkerState.STOPPING)
            if active < self.desired_count:
                log.info(f"Respawning worker for slot {replacement.slot_id}.")
                self._spawn_into_slot(replacement.slot_id)
        self._reload_next()

    def _on_ready_timeout(self, event: ReadyTimeout) -> None:
        replacement = self._replacement
        if replacement is None or replacement.pid != event.pid:
            return
        if replacement.state is WorkerState.STARTING:
            self._abort_replacement(f"not running after {self.reload_timeout}s")

    #* --- Worker Lifecycle Events ---
    def _on_ready(self, event: WorkerReady) -> None:
        handle = self._processes.get(event.pid)
        if handle is None or handle.state is not WorkerState.STARTING:
            return
        handle.mark_running()
        log.debug(f"Worker slot {handle.slot_id} (PID {handle.pid}) is running.")

        if handle is self._replacement:
            self._promote_replacement()
        elif self.operation is Operation.NONE:
            # A respawned worker; keep the PID file current.
            self._write_pid_file()
        else:
            self._check_scaled()

    def _on_exited(self, event: WorkerExited) -> None:
        handle = self._processes.pop(event.pid, None)
        if handle is None:
            log.debug(f"Exit of untracked PID {event.pid} ignored.")
            return

        self._cancel_retire_timer(handle.pid)
        previous_state = handle.state
        handle.mark_exited(event.exit_code)
        if self.workers.get(handle.slot_id) is handle:
            del self.workers[handle.slot_id]

        if self.operation is Operation.STOPPING:
            log.info(f"Worker slot {handle.slot_id} (PID {handle.pid}) exited with code {event.exit_code}.")
            return

        if handle is self._replacement:
            self._abort_replacement(f"exited with code {event.exit_code} before becoming ready")
            return

        if handle is self._retiring:
            self._retiring = None
            log.info(f"Retired worker for slot {handle.slot_id} (PID {handle.pid}) exited.")
            self._reload_next()
            return

        if previous_state is WorkerState.STOPPING:
            log.info(f"Worker slot {handle.slot_id} (PID {handle.pid}) stopped with code {event.exit_code}.")
            self._check_scaled()
            return

        if previous_state is WorkerState.STARTING:
            self._on_failed_start(handle)
        else:
            self._on_unexpected_exit(handle)
        self._check_scaled()

    def _on_failed_start(self, handle: WorkerHandle) -> None:
        log.error(
            f"Worker slot {handle.slot_id} (PID {handle.pid}) exited with code {handle.exit_code} "
            f"before becoming ready (attempt {handle.attempts}/{self.spawn_retry_limit})."
        )
        if handle.attempts >= self.spawn_retry_limit:
            if self._forming:
                raise SpawnError(handle.slot_id, f"worker exited {handle.attempts} times before becoming ready")
            self._give_up(handle.slot_id)
            return
        self._spawn_into_slot(handle.slot_id, attempts=handle.attempts + 1)

    def _on_unexpected_exit(self, handle: WorkerHandle) -> None:
        log.warning(str(UnexpectedExit(handle.slot_id, handle.pid, handle.exit_code)))
        uptime = time.time() - handle.started_at
        if uptime < self.crash_loop_window:
            log.warning(f"Worker slot {handle.slot_id} is flapping: it died {uptime:.1f}s after starting.")

        if self._replacement is not None and self._replacement.slot_id == handle.slot_id:
            # The replacement being started will take over this slot.
            return

        active = sum(1 for h in self.workers.values() if h.state is not WorkerState.STOPPING)
        if active >= self.desired_count:
            return

        if handle.slot_id in self._reload_queue:
            self._reload_queue.remove(handle.slot_id)
        log.info(f"Respawning worker for slot {handle.slot_id}.")
        self._spawn_into_slot(handle.slot_id)

    #* --- Stopping ---
    def _on_stop(self) -> None:
        if self.operation is Operation.STOPPING:
            log.warning("Repeated stop request, forcing termination of remaining workers.")
            self.shutdown.force()
            return

        if self.operation is not Operation.NONE:
            log.info(f"Stop requested, abandoning '{self.operation.value}'.")
        else:
            log.info("Stop requested.")

        self.operation = Operation.STOPPING
        self.desired_count = 0
        self._pending.clear()
        self._reload_queue.clear()
        self._cancel_reload_timer()
        self._replacement = None
        self._retiring = None
        for pid in list(self._retire_timers):
            self._cancel_retire_timer(pid)

        for handle in self.live_processes():
            self._retire(handle)

    #* --- Lifecycle ---
    def form(self, count: int) -> None:
        """
        Spawns the initial pool and blocks until every worker is running.

        :param count: Initial desired number of workers.
        :raises SpawnError: If a worker cannot be started; fatal at this stage.
        """
        target = self._clamp(count)
        log.info(f"Forming cluster with {target} workers...")
        self._forming = True
        try:
            self.operation = Operation.SCALING_UP
            self.desired_count = target
            self._converge()
            while self.operation is Operation.SCALING_UP:
                self.process_next(timeout=0.5)
        finally:
            self._forming = False

    def run(self, count: int) -> int:
        """
        Forms the cluster and supervises it until a stop is requested.

        :param count: Initial desired number of workers.
        :return: The master exit code: 0 after a clean drain, 1 otherwise.
        """
        start_time = time.time()
        try:
            self.form(count)
        except SpawnError as e:
            log.critical(f"Cluster formation failed: {e}")
            self.dispatch(Stop())
            self.shutdown.drain(self.drain_timeout)
            return 1

        if self.operation is not Operation.STOPPING:
            log.info(f"Cluster formed with {len(self.workers)} workers in {time.time() - start_time:.2f} seconds.")

        while self.operation is not Operation.STOPPING:
            self.process_next(timeout=0.5)

        result = self.shutdown.drain(self.drain_timeout)
        log.info(
            f"Cluster stopped ({result.status.value}). Total runtime: "
            f"{time.strftime('%H:%M:%S', time.gmtime(time.time() - start_time))}"
        )
        return result.exit_code
