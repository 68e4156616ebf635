"""
This module contains the configuration settings for the herd supervisor.
It defines paths, worker pool settings, timeouts and logging configuration.
It is used throughout the application to ensure consistent settings and paths.
"""

import os
import sys
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=False)


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 't', 'yes', 'y')


#* --- Core Paths ---
BASE_DIR = pathlib.Path(os.getenv("HERD_BASE_DIR", os.getcwd())).resolve()
RUN_DIR = pathlib.Path(os.getenv("HERD_RUN_DIR", str(BASE_DIR / "pids")))
PID_FILE_PATH = pathlib.Path(os.getenv("HERD_PID_FILE", str(RUN_DIR / "herd.pid")))
OVERRIDES_JSON_PATH = pathlib.Path(os.getenv("HERD_OVERRIDES_FILE", str(RUN_DIR / "overrides.json")))

#* --- Python Executable Configuration ---
PYTHON_EXECUTABLE = os.getenv("PYTHON_EXECUTABLE", sys.executable)

#* --- Worker Command ---
# Placeholders: {python} interpreter, {slot} slot id, {fd} shared listening socket.
DEFAULT_WORKER_COMMAND = "{python} -m herd.worker {fd}"
WORKER_COMMAND = os.getenv("HERD_WORKER_COMMAND", DEFAULT_WORKER_COMMAND)
SERVER_NAME = os.getenv("HERD_SERVER_NAME", "herd")

#* --- Shared Listener ---
BIND_HOST = os.getenv("HERD_BIND_HOST", "127.0.0.1")
BIND_PORT = int(os.getenv("HERD_BIND_PORT", "8080"))

#* --- Pool Size ---
WORKER_COUNT = int(os.getenv("HERD_WORKERS", "1"))
MIN_WORKERS = int(os.getenv("HERD_MIN_WORKERS", "0"))
MAX_WORKERS = int(os.getenv("HERD_MAX_WORKERS", "64"))

#* --- Supervisor Timings ---
WORKER_GRACE_SECONDS = float(os.getenv("HERD_WORKER_GRACE", "1.0"))
SPAWN_RETRY_LIMIT = int(os.getenv("HERD_SPAWN_RETRIES", "3"))
RELOAD_TIMEOUT_SECONDS = float(os.getenv("HERD_RELOAD_TIMEOUT", "30"))
DRAIN_TIMEOUT_SECONDS = float(os.getenv("HERD_DRAIN_TIMEOUT", "10"))  # seconds before force-killing
KILL_TIMEOUT_SECONDS = float(os.getenv("HERD_KILL_TIMEOUT", "5"))
CRASH_LOOP_WINDOW_SECONDS = float(os.getenv("HERD_CRASH_LOOP_WINDOW", "5"))

#* --- Logging ---
LOKI_ENABLED = _env_flag("LOKI_ENABLED")
LOKI_URL = os.getenv("LOKI_URL", "http://localhost:3100")
LOKI_ORG_ID = os.getenv("LOKI_ORG_ID", "fake")
LOG_BUFFER_FLUSH_INTERVAL = 10

#* --- MODIFIABLE SETTINGS (persisted in overrides.json) ---
MODIFIABLE_SETTINGS = {
    "WORKER_COMMAND", "WORKER_COUNT", "MIN_WORKERS", "MAX_WORKERS",
    "WORKER_GRACE_SECONDS", "SPAWN_RETRY_LIMIT",
    "RELOAD_TIMEOUT_SECONDS", "DRAIN_TIMEOUT_SECONDS", "KILL_TIMEOUT_SECONDS",
    "LOG_BUFFER_FLUSH_INTERVAL",
}
