import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

import psutil

if TYPE_CHECKING:
    from .manager import ClusterManager

log = logging.getLogger(__name__)


def get_pid_info(pid_path: Path) -> Optional[Dict[str, Any]]:
    """
    Reads the PID file from disk and returns its contents.

    :param pid_path: Location of the PID file.
    :return: A dictionary of PIDs if the file exists and is valid, else None.
    """
    if not pid_path.exists():
        return None
    try:
        with pid_path.open("r") as f:
            pids = json.load(f)
    except (json.JSONDecodeError, IOError):
        pid_path.unlink(missing_ok=True)
        return None
    if not isinstance(pids, dict) or "master" not in pids:
        pid_path.unlink(missing_ok=True)
        return None
    return pids


def get_master_pid(pid_path: Path) -> Optional[int]:
    """Returns the recorded master PID if that process is still alive."""
    pid_info = get_pid_info(pid_path)
    if not pid_info:
        return None
    master_pid = int(pid_info["master"])
    return master_pid if psutil.pid_exists(master_pid) else None


def write_pid_file(manager: "ClusterManager", pid_path: Path) -> None:
    """
    Atomically writes the master PID and the current worker PIDs to the PID file.

    :param manager: The ClusterManager instance.
    :param pid_path: Location of the PID file.
    """
    pid_dict = {
        "master": manager.master_pid,
        "workers": {str(slot): handle.pid for slot, handle in sorted(manager.workers.items())},
    }
    temp_pid_path = pid_path.with_suffix(".tmp")
    try:
        pid_path.parent.mkdir(parents=True, exist_ok=True)
        with temp_pid_path.open("w") as f:
            json.dump(pid_dict, f, indent=4)
        temp_pid_path.replace(pid_path)
    except (IOError, OSError) as e:
        log.error(f"Failed to write PID file: {e}", exc_info=True)
    finally:
        temp_pid_path.unlink(missing_ok=True)


def remove_pid_file(pid_path: Path) -> None:
    pid_path.unlink(missing_ok=True)
    log.debug("Cleaned up PID file.")
