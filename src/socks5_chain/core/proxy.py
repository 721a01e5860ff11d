"""Public entry point for the relay core.

Example:
    from socks5_chain.core.proxy import CredentialStore, RelayServer

    params = CredentialStore().resolve(passphrase="secret", local_port=1080)
    server = RelayServer(params)
    server.start()

Attributes:
    __all__ (list): List of public components exposed by this module
"""

from .config import ConnectionParameters, CredentialStore
from .exceptions import (
    ConfigError,
    DecryptError,
    ListenerError,
    PassphraseRequiredError,
    ProxyError,
    ValidationError,
)
from .lib import RelayServer, ServerState

__all__ = [
    "ConfigError",
    "ConnectionParameters",
    "CredentialStore",
    "DecryptError",
    "ListenerError",
    "PassphraseRequiredError",
    "ProxyError",
    "RelayServer",
    "ServerState",
    "ValidationError",
]
