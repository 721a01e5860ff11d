"""Utility functions and helpers."""

from socks5_chain.core.utils.log_config import setup_logging
from socks5_chain.core.utils.utils import format_bytes

__all__ = ["format_bytes", "setup_logging"]
