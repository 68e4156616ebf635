import signal
import logging
from typing import Any, Callable, Dict, Optional

from herd.cluster.commands import Reload, ScaleBy, Stop

log = logging.getLogger(__name__)

# Signal name -> supervisor command. Names missing on the platform are skipped.
SIGNAL_COMMANDS = {
    "SIGTTIN": ScaleBy(+1),
    "SIGTTOU": ScaleBy(-1),
    "SIGUSR2": Reload("rolling"),
    "SIGWINCH": Reload("full"),
    "SIGHUP": Reload("full"),
    "SIGTERM": Stop(),
    "SIGINT": Stop(),
}


class SignalRouter:
    """
    Maps process signals delivered to the master onto supervisor commands.

    The installed handler does nothing but enqueue the command, so it is safe
    to run at any point of the control loop.
    """

    def __init__(self, submit: Callable[[Any], None]) -> None:
        self.submit = submit
        self.table: Dict[int, Any] = {
            getattr(signal, name): command
            for name, command in SIGNAL_COMMANDS.items()
            if hasattr(signal, name)
        }
        self._previous: Dict[int, Any] = {}

    def route(self, signum: int) -> Optional[Any]:
        """Returns the command for a signal, or None for signals the supervisor ignores."""
        return self.table.get(signum)

    def handle(self, signum: int, frame: Any = None) -> None:
        command = self.route(signum)
        if command is not None:
            self.submit(command)

    def install(self) -> None:
        """Registers the handler for every routed signal. Must run in the main thread."""
        for signum in self.table:
            self._previous[signum] = signal.signal(signum, self.handle)
        names = ", ".join(sorted(signal.Signals(s).name for s in self.table))
        log.debug(f"Signal handlers installed for {names}")

    def uninstall(self) -> None:
        """Restores the handlers that were active before `install`."""
        for signum, previous in self._previous.items():
            signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
        self._previous.clear()
