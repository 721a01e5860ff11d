"""Core relay library components."""

from .proxy_server import RelayServer, ServerState, SocksProxy
from .proxy_stats import ProxyStats, proxy_stats
from .socks_handler import Session, SocksHandler, relay

__all__ = [
    "proxy_stats",
    "ProxyStats",
    "relay",
    "RelayServer",
    "ServerState",
    "Session",
    "SocksHandler",
    "SocksProxy",
]
