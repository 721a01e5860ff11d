"""Core relay implementation.

This package contains the core components of the relay:
- SOCKS5 protocol handling, inbound and toward the upstream
- Server lifecycle and graceful shutdown
- Encrypted credential storage
- Statistics tracking
- Exception handling

The CLI in ``socks5_chain.cmd`` is a thin layer over this package.
"""
