"""
Logging module for the supervisor.
This module provides functionality to set up console and Loki logging.
"""

from .setup import setup_logging, MainFormatter
from .loki import LokiHandler

__all__ = ["setup_logging", "MainFormatter", "LokiHandler"]
