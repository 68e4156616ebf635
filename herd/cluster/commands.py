"""
Commands and events consumed by the cluster state machine.

Signals, process observers and timers all produce these objects into the
same queue, so the state machine never distinguishes where an event came from.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Operation(str, Enum):
    NONE = "none"
    SCALING_UP = "scaling_up"
    SCALING_DOWN = "scaling_down"
    RELOADING = "reloading"
    STOPPING = "stopping"


@dataclass(frozen=True)
class ScaleBy:
    delta: int


@dataclass(frozen=True)
class Reload:
    kind: str = "rolling"  # "rolling" or "full"


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class WorkerReady:
    slot_id: int
    pid: int


@dataclass(frozen=True)
class WorkerExited:
    slot_id: int
    pid: int
    exit_code: Optional[int]


@dataclass(frozen=True)
class ReadyTimeout:
    slot_id: int
    pid: int


@dataclass(frozen=True)
class RetireTimeout:
    slot_id: int
    pid: int
