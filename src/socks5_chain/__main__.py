"""Allow running the relay with ``python -m socks5_chain``."""

from socks5_chain.cmd.cli import main

main()
