import time
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, List

from herd.cluster.errors import DrainTimeout

if TYPE_CHECKING:
    from .manager import ClusterManager

log = logging.getLogger(__name__)


class DrainStatus(str, Enum):
    CLEAN = "clean"
    FORCED = "forced"


@dataclass
class DrainResult:
    status: DrainStatus
    forced_slots: List[int] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        """Exit code for the master process."""
        return 0 if self.status is DrainStatus.CLEAN else 1


class ShutdownCoordinator:
    """
    Drains the worker pool once the cluster is stopping.

    Exit events are consumed through the manager's own dispatch so the drain
    never mutates cluster state behind the state machine's back.
    """

    def __init__(self, manager: "ClusterManager", kill_timeout: float = 5.0, poll_interval: float = 0.5) -> None:
        self.manager = manager
        self.kill_timeout = kill_timeout
        self.poll_interval = poll_interval
        self.forced_slots: List[int] = []

    def _wait_for_exits(self, deadline: float) -> None:
        while self.manager.live_processes():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self.manager.process_next(timeout=min(remaining, self.poll_interval))

    def force(self) -> None:
        """Sends SIGKILL to every worker that is still alive."""
        survivors = self.manager.live_processes()
        if not survivors:
            return
        log.warning(f"{len(survivors)} workers did not terminate gracefully. Forcing shutdown...")
        for handle in survivors:
            if handle.slot_id not in self.forced_slots:
                self.forced_slots.append(handle.slot_id)
            self.manager.launcher.kill(handle)

    def drain(self, timeout: float) -> DrainResult:
        """
        Waits until every worker has exited or `timeout` elapses.

        :param timeout: Seconds to wait for graceful exits before force-killing.
        :return: CLEAN if every worker exited on its own, otherwise FORCED with
            the slot ids that had to be killed.
        """
        log.info(f"Draining {len(self.manager.live_processes())} workers (timeout {timeout}s)...")
        self._wait_for_exits(time.monotonic() + timeout)

        survivors = self.manager.live_processes()
        if survivors:
            log.warning(str(DrainTimeout(sorted(h.slot_id for h in survivors), timeout)))
            self.force()

        if self.forced_slots:
            self._wait_for_exits(time.monotonic() + self.kill_timeout)
            stubborn = self.manager.live_processes()
            if stubborn:
                log.critical(
                    f"Workers {[h.pid for h in stubborn]} survived SIGKILL for {self.kill_timeout}s. Giving up on them."
                )
                self.manager.forget(stubborn)

        self.manager.workers.clear()
        if self.forced_slots:
            log.warning(f"Drain finished with forced termination of slots {sorted(self.forced_slots)}.")
            return DrainResult(DrainStatus.FORCED, sorted(self.forced_slots))

        log.info("All workers exited cleanly.")
        return DrainResult(DrainStatus.CLEAN)
