"""
The cluster package.
Supervises a pool of worker processes.

This package contains the ClusterManager state machine and its helper modules,
which together handle spawning, scaling, reloading and draining the workers.
"""
from .commands import Operation, ReadyTimeout, Reload, RetireTimeout, ScaleBy, Stop, WorkerExited, WorkerReady
from .errors import DrainTimeout, HerdError, ReloadTimeout, SpawnError, UnexpectedExit
from .handle import WorkerHandle, WorkerState
from .launcher import ProcessLauncher, bind_listener
from .manager import ClusterManager
from .shutdown import DrainResult, DrainStatus, ShutdownCoordinator
from .signals import SignalRouter

__all__ = [
    'ClusterManager', 'ProcessLauncher', 'SignalRouter', 'ShutdownCoordinator',
    'WorkerHandle', 'WorkerState', 'Operation', 'ScaleBy', 'Reload', 'Stop',
    'WorkerReady', 'WorkerExited', 'ReadyTimeout', 'RetireTimeout', 'DrainResult', 'DrainStatus', 'bind_listener',
    'HerdError', 'SpawnError', 'UnexpectedExit', 'ReloadTimeout', 'DrainTimeout',
]
