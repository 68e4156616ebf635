import time
from enum import Enum
from typing import Any, Dict, Optional


class WorkerState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    EXITED = "exited"


class WorkerHandle:
    """
    Binds a logical worker slot to the OS process currently serving it.

    The slot id survives restarts of the slot; the pid changes on every spawn.
    """

    def __init__(self, slot_id: int, pid: int, process: Any = None, attempts: int = 1) -> None:
        self.slot_id = slot_id
        self.pid = pid
        self.process = process
        self.attempts = attempts
        self.state = WorkerState.STARTING
        self.exit_code: Optional[int] = None
        self.started_at = time.time()

    @property
    def is_alive(self) -> bool:
        return self.state is not WorkerState.EXITED

    @property
    def uptime(self) -> float:
        return time.time() - self.started_at

    def mark_running(self) -> None:
        if self.state is WorkerState.STARTING:
            self.state = WorkerState.RUNNING

    def mark_stopping(self) -> None:
        if self.state is not WorkerState.EXITED:
            self.state = WorkerState.STOPPING

    def mark_exited(self, exit_code: Optional[int]) -> None:
        self.state = WorkerState.EXITED
        self.exit_code = exit_code

    def as_dict(self) -> Dict[str, Any]:
        return {
            "slot": self.slot_id,
            "pid": self.pid,
            "state": self.state.value,
            "exit_code": self.exit_code,
            "started_at": self.started_at,
        }

    def __repr__(self) -> str:
        suffix = f"({self.exit_code})" if self.state is WorkerState.EXITED else ""
        return f"<WorkerHandle slot={self.slot_id} pid={self.pid} {self.state.value}{suffix}>"
