import sys
import logging

from herd.config import effective_settings as config
from herd.log.loki import LokiHandler

WORKER_LOGGER_PREFIX = "proc."
MASTER_FORMAT = "%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s"


class MainFormatter(logging.Formatter):
    """
    Console formatter for the master.

    Lines re-logged from a worker's stdout/stderr already carry their own
    formatting, so they only get the worker label in front.
    """

    def __init__(self) -> None:
        super().__init__(MASTER_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        if record.name.startswith(WORKER_LOGGER_PREFIX):
            return f"[{record.name[len(WORKER_LOGGER_PREFIX):]}] {record.getMessage()}"
        return super().format(record)


def _attach_loki(root_logger: logging.Logger) -> None:
    try:
        loki_handler = LokiHandler(url=config.LOKI_URL, org_id=config.LOKI_ORG_ID)
    except Exception as e:
        root_logger.error(f"Failed to initialize Grafana Loki logging handler: {e}")
        return
    loki_handler.setLevel(logging.INFO)  # DEBUG stays on the console
    root_logger.addHandler(loki_handler)
    root_logger.info(f"Shipping logs to Grafana Loki at {config.LOKI_URL}.")


def setup_logging(console_level: int = logging.INFO) -> None:
    """
    Configures the root logger of a herd process (master or worker).

    Previously installed handlers are removed and closed, so calling this
    twice never duplicates output.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    if config.LOKI_ENABLED:
        _attach_loki(root_logger)
