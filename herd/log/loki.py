import os
import sys
import socket
import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional

import requests

from herd.config import effective_settings as config

PUSH_PATH = "/loki/api/v1/push"


class LokiHandler(logging.Handler):
    """
    Ships master and worker log lines to Grafana Loki.

    Records are buffered and pushed in batches by a background thread every
    `flush_interval` seconds, or sooner once `batch_size` entries are waiting.
    Worker output is labelled with the worker it came from.
    """

    def __init__(self, url: str, org_id: Optional[str] = None, flush_interval: Optional[float] = None):
        """
        :param url: The base URL of the Loki instance.
        :param org_id: Tenant sent as 'X-Scope-OrgID', if any.
        :param flush_interval: Seconds between background pushes.
        """
        super().__init__()
        self.url = url.rstrip("/") + PUSH_PATH
        self.org_id = org_id
        self.flush_interval = flush_interval or config.LOG_BUFFER_FLUSH_INTERVAL
        self.batch_size = 200
        self.pending: Deque[Dict[str, Any]] = deque()
        self.pending_lock = threading.Lock()
        self.labels = {
            "job": "herd",
            "hostname": os.getenv("HOSTNAME") or socket.gethostname(),
            "master_pid": os.getenv("HERD_MASTER_PID") or str(os.getpid()),
        }

        self.stop_event = threading.Event()
        self.pusher = threading.Thread(target=self._push_loop, daemon=True, name="LokiPusher")
        self.pusher.start()

    def _push_loop(self) -> None:
        while not self.stop_event.wait(self.flush_interval):
            self.flush()
        self.flush()

    def _entry(self, record: logging.LogRecord) -> Dict[str, Any]:
        if record.name.startswith("proc."):
            # Raw worker line: label it "worker.<slot>".
            logger_name, line = record.name[len("proc."):], record.getMessage()
        else:
            logger_name, line = record.name, self.format(record)
        stream = dict(self.labels, level=record.levelname.lower(), logger=logger_name)
        return {"stream": stream, "values": [[str(int(record.created * 1e9)), line]]}

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = self._entry(record)
            with self.pending_lock:
                self.pending.append(entry)
                full = len(self.pending) >= self.batch_size
            if full:
                self.flush()
        except Exception as e:
            print(f"ERROR: LokiHandler dropped a log record: {e}", file=sys.stderr)

    def _drain_pending(self) -> List[Dict[str, Any]]:
        with self.pending_lock:
            batch = list(self.pending)
            self.pending.clear()
        return batch

    def flush(self) -> None:
        """Pushes everything buffered so far. Failures go to stderr, never to logging."""
        batch = self._drain_pending()
        if not batch:
            return

        headers = {"Content-Type": "application/json"}
        if self.org_id:
            headers["X-Scope-OrgID"] = self.org_id

        try:
            response = requests.post(self.url, json={"streams": batch}, headers=headers, timeout=5)
        except requests.RequestException as e:
            print(f"CRITICAL: Failed to send {len(batch)} logs to Loki: {e}", file=sys.stderr)
            return
        if response.status_code != 204:
            print(f"ERROR: Loki returned non-204 status: {response.status_code} - {response.text}", file=sys.stderr)

    def close(self) -> None:
        self.stop_event.set()
        if self.pusher.is_alive() and self.pusher is not threading.current_thread():
            self.pusher.join(timeout=self.flush_interval + 2)
        super().close()
