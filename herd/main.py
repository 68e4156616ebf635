import sys
import signal
import logging
from typing import Callable, Dict, List, Optional, Tuple

import psutil
import setproctitle

from herd import __version__
from herd.config import effective_settings as config
from herd.log import setup_logging
from herd.cluster import ClusterManager, SignalRouter, bind_listener, persistence

log = logging.getLogger("herd")

HELP_TEXT = """herd - a supervisor for clusters of worker processes

Usage: herd <command> [options]

Commands:
  start [--workers=N]        - Start the master and N workers (default {workers}).
  start cluster --workers=N  - Same as 'start'.
  stop                       - Stop the cluster gracefully (SIGTERM).
  scale-up                   - Add one worker (SIGTTIN).
  scale-down                 - Remove one worker (SIGTTOU).
  reload                     - Replace every worker one at a time (SIGUSR2).
  reload-hup                 - Same as 'reload', triggered by SIGWINCH.
  status                     - Show the master and its workers.
  config                     - Show the effective settings.
  config set KEY VALUE       - Persist a modifiable setting for the next start.
  version                    - Show the herd version.
  help                       - Show this help message.

Options:
  --verbose                  - Enable DEBUG output on the console.
"""

# Command name -> signal delivered to the running master.
CONTROL_SIGNALS = {
    "stop": "SIGTERM",
    "scale-up": "SIGTTIN",
    "scale-down": "SIGTTOU",
    "reload": "SIGUSR2",
    "reload-hup": "SIGWINCH",
}


def parse_start_args(args: List[str]) -> Tuple[int, bool]:
    """
    Parses the options of the 'start' command.

    :param args: Arguments following 'start'.
    :return: A tuple of (worker count, verbose flag).
    :raises ValueError: On unknown options or a malformed worker count.
    """
    workers = config.WORKER_COUNT
    verbose = False
    remaining = list(args)
    if remaining and remaining[0] == "cluster":
        remaining.pop(0)

    while remaining:
        arg = remaining.pop(0)
        if arg == "--verbose":
            verbose = True
        elif arg.startswith("--workers="):
            workers = int(arg.split("=", 1)[1])
        elif arg == "--workers" and remaining:
            workers = int(remaining.pop(0))
        else:
            raise ValueError(f"Unknown option '{arg}' for 'start'.")

    if workers < 0:
        raise ValueError("--workers must not be negative.")
    return workers, verbose


def run_master(workers: int, verbose: bool = False) -> int:
    """
    Runs the master process in the foreground until it is stopped.

    :param workers: Initial number of workers.
    :param verbose: If True, sets console logging to DEBUG level.
    :return: The master exit code.
    """
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    pid_path = config.PID_FILE_PATH

    running_pid = persistence.get_master_pid(pid_path)
    if running_pid is not None:
        log.error(f"herd appears to be running already (PID {running_pid}). Use 'stop' first.")
        return 1

    setproctitle.setproctitle("herd - master")
    log.info("=" * 20 + f" herd {__version__} starting " + "=" * 20)

    listener = None
    if "{fd}" in config.WORKER_COMMAND:
        try:
            listener = bind_listener(config.BIND_HOST, config.BIND_PORT)
        except OSError as e:
            log.critical(f"Could not bind {config.BIND_HOST}:{config.BIND_PORT}: {e}")
            return 1
        log.info(f"Listening on {config.BIND_HOST}:{listener.getsockname()[1]}")

    manager = ClusterManager(config.as_dict(), listener=listener, pid_file=pid_path)
    persistence.write_pid_file(manager, pid_path)
    router = SignalRouter(manager.submit)
    router.install()
    try:
        return manager.run(workers)
    finally:
        router.uninstall()
        if listener is not None:
            listener.close()
        persistence.remove_pid_file(pid_path)


def send_control_signal(command: str) -> int:
    """Delivers the signal mapped to `command` to the running master."""
    master_pid = persistence.get_master_pid(config.PID_FILE_PATH)
    if master_pid is None:
        print("herd is not running (no live master in the PID file).", file=sys.stderr)
        return 1

    signame = CONTROL_SIGNALS[command]
    try:
        psutil.Process(master_pid).send_signal(getattr(signal, signame))
    except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
        print(f"Could not signal master {master_pid}: {e}", file=sys.stderr)
        return 1
    print(f"Sent {signame} to master {master_pid}.")
    return 0


def _describe(pid: int, label: str) -> str:
    try:
        p = psutil.Process(pid)
        cpu = p.cpu_percent(interval=0.1)
        mem = p.memory_info().rss
        return f"  - {label:<12} : PID {pid:<8} | Status: {p.status().upper()} | CPU: {cpu:.1f}% | MEM: {mem/1024/1024:.1f} MB"
    except psutil.NoSuchProcess:
        return f"  - {label:<12} : PID {pid:<8} | Status: STOPPED (Stale PID)"
    except psutil.AccessDenied:
        return f"  - {label:<12} : PID {pid:<8} | Status: RUNNING (Access Denied)"


def display_status() -> int:
    """Shows the master and worker processes recorded in the PID file, with resource usage."""
    pid_info = persistence.get_pid_info(config.PID_FILE_PATH)
    if not pid_info:
        print("\nherd is STOPPED (No PID file found).\n")
        return 1

    print("\n--- Cluster Status ---")
    print(_describe(int(pid_info["master"]), "master"))
    workers = pid_info.get("workers", {})
    for slot, pid in sorted(workers.items(), key=lambda item: int(item[0])):
        print(_describe(int(pid), f"worker {slot}"))
    print(f"\n{len(workers)} workers recorded.")
    print("-" * 22 + "\n")
    return 0


def display_config(args: Optional[List[str]] = None) -> int:
    if args:
        return set_config(args)
    print("\n--- Effective Configuration ---")
    for key, value in sorted(config.as_dict().items()):
        if key.isupper() and key != "MODIFIABLE_SETTINGS":
            print(f"  {key} = {value}")
    print("-------------------------------\n")
    return 0


def set_config(args: List[str]) -> int:
    """Handles `config set KEY VALUE`."""
    if len(args) != 3 or args[0] != "set":
        print("Usage: herd config set KEY VALUE", file=sys.stderr)
        return 1
    ok, message = config.update_setting(args[1].upper(), args[2])
    print(message, file=sys.stdout if ok else sys.stderr)
    return 0 if ok else 1


def print_help() -> int:
    print(HELP_TEXT.format(workers=config.WORKER_COUNT))
    return 0


def print_version() -> int:
    print(__version__)
    return 0


def execute_command(command: str, args: List[str]) -> int:
    """
    Executes a single command.

    :param command: The main command string (e.g., 'start', 'reload').
    :param args: A list of arguments for the command.
    :return: The process exit code.
    """
    if command == "start":
        try:
            workers, verbose = parse_start_args(args)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        return run_master(workers, verbose)

    if command in CONTROL_SIGNALS:
        return send_control_signal(command)

    if command == "config":
        return display_config(args)

    command_map: Dict[str, Callable[[], int]] = {
        "status": display_status,
        "help": print_help,
        "version": print_version,
    }
    if command in command_map:
        return command_map[command]()

    print(f"`{command}` is not a command I can perform.", file=sys.stderr)
    print("run `herd help` to learn more", file=sys.stderr)
    return 1


def main(argv: Optional[List[str]] = None) -> int:
    """The main entry point for the command-line interface."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        return print_help()
    return execute_command(argv[0].lower(), argv[1:])
