"""Prompt and UI utilities."""

from socks5_chain.core.utils.prompt.prompt import PromptHandler, ask_connection, ask_passphrase, console
from socks5_chain.core.utils.prompt.proxy_ui import ProxyUI, create_proxy_ui

__all__ = ["ask_connection", "ask_passphrase", "console", "create_proxy_ui", "PromptHandler", "ProxyUI"]
