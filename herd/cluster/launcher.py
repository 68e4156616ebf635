import os
import sys
import shlex
import signal
import socket
import logging
import threading
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import psutil

from herd.cluster.commands import WorkerExited, WorkerReady
from herd.cluster.errors import SpawnError
from herd.cluster.handle import WorkerHandle

log = logging.getLogger(__name__)


#* --- Shared Listener ---
def bind_listener(host: str, port: int, backlog: int = 128) -> socket.socket:
    """
    Binds the listening socket shared by every worker.

    The master owns the socket for its whole lifetime, so the port stays bound
    while individual workers are replaced.
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind((host, port))
    sock.listen(backlog)
    sock.set_inheritable(True)
    return sock


#* --- Process Output ---
def _read_pipe(pipe, process_name: str, level: int) -> None:
    """Target function for reader threads. Reads and logs lines from a subprocess pipe."""
    proc_logger = logging.getLogger(f"proc.{process_name}")
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").rstrip()
            if line:
                proc_logger.log(level, line)
    except (OSError, ValueError) as e:
        proc_logger.debug(f"Pipe reader for {process_name} stream exited: {e}")
    finally:
        pipe.close()


def log_process_output(process: subprocess.Popen, name: str) -> None:
    """Starts background threads to consume and log a process's stdout/stderr."""
    if process.stdout:
        threading.Thread(target=_read_pipe, args=(process.stdout, name, logging.INFO), daemon=True).start()
    if process.stderr:
        threading.Thread(target=_read_pipe, args=(process.stderr, name, logging.ERROR), daemon=True).start()


def _get_popen_creation_flags() -> Dict[str, Any]:
    """Returns platform-specific creation flags for subprocess.Popen."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW}
    # Workers get their own session so terminal signals only reach the master.
    return {"start_new_session": True}


#* --- Launcher ---
class ProcessLauncher:
    """
    Spawns worker processes from a fixed command template and reports their
    lifecycle through `notify`.

    Every spawned process gets an observer thread which emits `WorkerReady`
    once the child has outlived the grace interval and `WorkerExited` once the
    OS reports its termination. Those events are the only way the cluster
    learns about worker deaths.
    """

    def __init__(
        self,
        notify: Callable[[Any], None],
        config: Dict[str, Any],
        listener: Optional[socket.socket] = None,
    ) -> None:
        self.notify = notify
        self.command_template: str = config["WORKER_COMMAND"]
        self.python_executable: str = config.get("PYTHON_EXECUTABLE") or sys.executable
        self.grace_seconds = float(config.get("WORKER_GRACE_SECONDS", 1.0))
        self.cwd: Optional[Path] = config.get("BASE_DIR")
        self.listener = listener

    def get_process_args(self, slot_id: int) -> List[str]:
        """Renders the worker command template for a slot."""
        if "{fd}" in self.command_template and self.listener is None:
            raise SpawnError(slot_id, "worker command needs a shared listener ({fd}) but none is bound")

        fd = self.listener.fileno() if self.listener is not None else -1
        return [
            part.format(python=self.python_executable, slot=slot_id, fd=fd)
            for part in shlex.split(self.command_template)
        ]

    def get_process_env(self, slot_id: int) -> Dict[str, str]:
        env = os.environ.copy()
        env["HERD_SLOT_ID"] = str(slot_id)
        env["HERD_MASTER_PID"] = str(os.getpid())
        return env

    def spawn(self, slot_id: int, attempts: int = 1) -> WorkerHandle:
        """
        Launches a new worker process for a slot.

        :param slot_id: The logical slot the worker will serve.
        :param attempts: Spawn attempts consumed for the slot, including this one.
        :return: A handle in the STARTING state.
        :raises SpawnError: If the OS could not create the process.
        """
        args = self.get_process_args(slot_id)
        popen_kwargs = _get_popen_creation_flags()
        if self.listener is not None:
            popen_kwargs["pass_fds"] = (self.listener.fileno(),)

        log.debug(f"Spawning worker for slot {slot_id}: {args}")
        try:
            process = psutil.Popen(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                cwd=str(self.cwd) if self.cwd else None,
                env=self.get_process_env(slot_id),
                **popen_kwargs,
            )
        except (OSError, ValueError, psutil.Error) as e:
            raise SpawnError(slot_id, str(e)) from e

        log_process_output(process, f"worker.{slot_id}")
        handle = WorkerHandle(slot_id, process.pid, process=process, attempts=attempts)

        threading.Thread(
            target=self._observe,
            args=(slot_id, process),
            daemon=True,
            name=f"WorkerObserver-{slot_id}-{process.pid}",
        ).start()

        log.info(f"Worker slot {slot_id} started with PID: {process.pid}")
        return handle

    def _observe(self, slot_id: int, process: psutil.Popen) -> None:
        """Waits on a child and reports readiness and exit. Runs in a daemon thread."""
        try:
            exit_code = process.wait(timeout=self.grace_seconds)
        except psutil.TimeoutExpired:
            self.notify(WorkerReady(slot_id, process.pid))
            exit_code = process.wait()
        self.notify(WorkerExited(slot_id, process.pid, exit_code))

    def terminate(self, handle: WorkerHandle, sig: int = signal.SIGTERM) -> None:
        """Sends a signal to a worker. Completion is observed through `WorkerExited`."""
        if handle.process is None:
            return
        try:
            log.debug(f"Sending signal {sig} to slot {handle.slot_id} (PID {handle.pid})")
            handle.process.send_signal(sig)
        except psutil.NoSuchProcess:
            log.warning(f"Process {handle.pid} no longer exists, skipping signal {sig}.")

    def kill(self, handle: WorkerHandle) -> None:
        """Forcefully kills a worker."""
        if handle.process is None:
            return
        try:
            log.warning(f"Killing stubborn worker slot {handle.slot_id} (PID {handle.pid}).")
            handle.process.kill()
        except psutil.NoSuchProcess:
            log.warning(f"Process {handle.pid} no longer exists, skipping forceful kill.")
