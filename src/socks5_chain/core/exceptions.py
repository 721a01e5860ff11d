"""Custom exceptions for the relay.

This module defines the closed set of errors raised by the relay and the
credential store. They fall into a few groups:
- Protocol violations and transport failures on a single connection
- Rejections reported by the upstream proxy
- Configuration problems that abort startup
- Listener failures that abort the whole server

Per-connection errors are caught by the connection handler and never reach
the listener. Configuration errors are surfaced to the operator, with
``PassphraseRequiredError`` kept distinct so callers can re-prompt.

Example:
    try:
        params = store.resolve(passphrase=passphrase)
    except PassphraseRequiredError:
        passphrase = ask_passphrase()
    except DecryptError as e:
        console.print(f"[red]Could not unlock credentials: {e}")
"""


class ProxyError(Exception):
    """Base exception for relay errors."""


class ProtocolError(ProxyError):
    """Raised when a peer sends bytes that violate the SOCKS5 protocol."""


class TransportError(ProxyError):
    """Raised when a socket closes or fails in the middle of a message."""


class UpstreamError(ProxyError):
    """Raised when the upstream proxy rejects a request."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class UpstreamAuthError(UpstreamError):
    """Raised when the upstream proxy rejects our username/password."""


class UpstreamConnectError(UpstreamError):
    """Raised when the upstream proxy refuses the CONNECT request."""


class ConfigError(ProxyError):
    """Raised when the stored or supplied configuration is unusable."""


class PassphraseRequiredError(ConfigError):
    """Raised when encrypted credentials exist but no passphrase was given."""


class DecryptError(ConfigError):
    """Raised when stored credentials cannot be decrypted or parsed.

    A wrong passphrase and a corrupted file are indistinguishable here.
    """


class ValidationError(ConfigError):
    """Raised when a required connection parameter is missing or invalid."""


class ListenerError(ProxyError):
    """Raised when the listening socket cannot be created."""
