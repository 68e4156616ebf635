import time
import logging
from typing import Any, Dict, Optional

import requests

log = logging.getLogger(__name__)


def probe(url: str, retries: int = 5, delay: float = 0.5, timeout: float = 2) -> Optional[Dict[str, Any]]:
    """
    Checks that a worker pool is serving by requesting a status endpoint.

    The supervisor never relies on this; it is meant for operators and tests
    observing the pool from the outside.

    :param url: The status URL, e.g. 'http://127.0.0.1:8080/api/status'.
    :param retries: Number of attempts before giving up.
    :param delay: Delay in seconds between attempts.
    :param timeout: Per-request timeout in seconds.
    :return: The decoded JSON body, or None if no attempt succeeded.
    """
    for attempt in range(retries):
        try:
            response = requests.get(url, timeout=timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            log.debug(f"Health probe of '{url}' failed (attempt {attempt + 1}/{retries}): {e}")
        except ValueError as e:
            log.error(f"Health probe of '{url}' returned invalid JSON: {e}")
            return None  # Do not retry on malformed data
        if attempt + 1 < retries:
            time.sleep(delay)

    log.warning(f"'{url}' did not answer after {retries} attempts.")
    return None


def wait_until_serving(url: str, timeout: float = 15, interval: float = 0.25) -> bool:
    """Polls `url` until it answers or `timeout` seconds have passed."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if probe(url, retries=1, timeout=min(2, timeout)) is not None:
            return True
        time.sleep(interval)
    return False
