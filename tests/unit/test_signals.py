import os
import sys
import time
import signal

import pytest

from herd.cluster import Reload, ScaleBy, SignalRouter, Stop

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals only")


class TestSignalRouter:
    """Test the mapping of signals onto supervisor commands."""

    @pytest.mark.parametrize("signame, command", [
        ("SIGTTIN", ScaleBy(+1)),
        ("SIGTTOU", ScaleBy(-1)),
        ("SIGUSR2", Reload("rolling")),
        ("SIGWINCH", Reload("full")),
        ("SIGHUP", Reload("full")),
        ("SIGTERM", Stop()),
        ("SIGINT", Stop()),
    ])
    def test_route(self, signame, command):
        router = SignalRouter(lambda event: None)

        assert router.route(getattr(signal, signame)) == command

    def test_unrouted_signal_is_ignored(self):
        submitted = []
        router = SignalRouter(submitted.append)

        assert router.route(signal.SIGUSR1) is None
        router.handle(signal.SIGUSR1, None)

        assert submitted == []

    def test_handle_submits_command(self):
        submitted = []
        router = SignalRouter(submitted.append)

        router.handle(signal.SIGTTOU, None)
        router.handle(signal.SIGTTOU, None)

        assert submitted == [ScaleBy(-1), ScaleBy(-1)]

    def test_install_and_uninstall(self):
        submitted = []
        router = SignalRouter(submitted.append)
        previous = signal.getsignal(signal.SIGTTIN)

        router.install()
        try:
            assert signal.getsignal(signal.SIGTTIN) == router.handle
            os.kill(os.getpid(), signal.SIGTTIN)
            deadline = time.monotonic() + 2
            while not submitted and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            router.uninstall()

        assert submitted == [ScaleBy(+1)]
        assert signal.getsignal(signal.SIGTTIN) == previous
