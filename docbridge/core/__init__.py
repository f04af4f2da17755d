"""
DocBridge - Core Module
=======================

Core configuration and logging setup.
"""

from docbridge.core.config import settings, get_settings
from docbridge.core.logging import configure_logging

__all__ = [
    "settings",
    "get_settings",
    "configure_logging",
]
