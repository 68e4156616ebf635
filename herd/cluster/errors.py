from typing import List, Optional


class HerdError(Exception):
    """Base class for supervisor errors."""


class SpawnError(HerdError):
    """The OS failed to create a worker process."""

    def __init__(self, slot_id: int, message: str) -> None:
        super().__init__(f"Failed to spawn worker for slot {slot_id}: {message}")
        self.slot_id = slot_id


class UnexpectedExit(HerdError):
    """A running worker exited without being asked to."""

    def __init__(self, slot_id: int, pid: int, exit_code: Optional[int]) -> None:
        super().__init__(f"Worker slot {slot_id} (PID {pid}) exited unexpectedly with code {exit_code}")
        self.slot_id = slot_id
        self.pid = pid
        self.exit_code = exit_code


class ReloadTimeout(HerdError):
    """A replacement worker never reached the running state."""

    def __init__(self, slot_id: int, reason: str) -> None:
        super().__init__(f"Replacement for slot {slot_id} did not become ready: {reason}")
        self.slot_id = slot_id


class DrainTimeout(HerdError):
    """Workers did not exit within the shutdown grace period."""

    def __init__(self, slot_ids: List[int], timeout: float) -> None:
        super().__init__(f"Slots {slot_ids} did not exit within {timeout}s")
        self.slot_ids = slot_ids
        self.timeout = timeout
