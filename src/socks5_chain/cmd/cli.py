"""Command-line interface for the SOCKS5 relay.

This module wires the operator-facing pieces around the core:
- Command-line and environment variable parsing
- Credential resolution, with a passphrase re-prompt when needed
- Interactive credential configuration
- Server startup and signal-driven shutdown

The CLI is built using Typer. Credentials can come from flags, from the
``UPSTREAM_USERNAME`` / ``UPSTREAM_PASSWORD`` environment variables or from
the encrypted store, which is unlocked with ``SOCKS5CHAIN_PASSWORD``.

Example:
    # First run: store credentials and start the relay
    $ socks5-chain run --upstream-host proxy.example.com --upstream-port 1080 \\
        --username alice --password s3cret --encpass hunter2

    # Later runs only need the passphrase
    $ SOCKS5CHAIN_PASSWORD=hunter2 socks5-chain run
"""

import signal
import sys
import threading
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console

from socks5_chain import __version__
from socks5_chain.core.config import DEFAULT_LOCAL_HOST, DEFAULT_LOCAL_PORT
from socks5_chain.core.proxy import (
    ConfigError,
    ConnectionParameters,
    CredentialStore,
    DecryptError,
    ListenerError,
    PassphraseRequiredError,
    RelayServer,
    ValidationError,
)
from socks5_chain.core.utils.log_config import setup_logging
from socks5_chain.core.utils.prompt import ask_connection, ask_passphrase, create_proxy_ui

console = Console()
app = typer.Typer(help="SOCKS5 relay that chains connections through an authenticated upstream proxy")

JOIN_INTERVAL = 0.5  # Seconds between liveness checks of the server thread


def resolve_parameters(
    store: CredentialStore,
    username: str,
    password: str,
    encpass: str,
    upstream_host: str,
    upstream_port: int,
    local_host: str,
    local_port: int,
) -> ConnectionParameters:
    """Resolve parameters, asking for the passphrase once if the store needs it."""
    try:
        return store.resolve(username, password, encpass, upstream_host, upstream_port, local_host, local_port)
    except PassphraseRequiredError:
        console.print("[yellow]Stored credentials are encrypted.")
        encpass = ask_passphrase()
        return store.resolve(username, password, encpass, upstream_host, upstream_port, local_host, local_port)


def report_config_error(error: ConfigError) -> None:
    """Print an actionable message for a configuration failure."""
    if isinstance(error, PassphraseRequiredError):
        console.print("[red]An encryption password is required to unlock stored credentials.")
        console.print("[yellow]Pass --encpass or set SOCKS5CHAIN_PASSWORD.")
    elif isinstance(error, DecryptError):
        console.print(f"[red]Could not decrypt stored credentials: wrong password or corrupted file ({error}).")
    elif isinstance(error, ValidationError):
        console.print(f"[red]Incomplete configuration: {error}.")
        console.print("[yellow]Supply the missing values with flags or run 'socks5-chain configure'.")
    else:
        console.print(f"[red]Configuration error: {error}")


def serve(server: RelayServer, dashboard: bool) -> None:
    """Run ``server`` on a worker thread until it fails or a signal arrives."""
    stop_requested = threading.Event()
    errors: list[BaseException] = []

    def run_server() -> None:
        try:
            server.start()
        except ListenerError as e:
            errors.append(e)

    def on_signal(signum, _frame) -> None:
        logger.info(f"Received signal {signal.Signals(signum).name}, initiating shutdown...")
        stop_requested.set()

    signal.signal(signal.SIGTERM, on_signal)

    server_thread = threading.Thread(target=run_server, name="relay-listener", daemon=True)
    server_thread.start()
    server.wait_started()

    ui = None
    if dashboard and not errors:
        listen = f"{server.params.local_host}:{server.params.local_port}"
        upstream = f"{server.params.upstream_host}:{server.params.upstream_port}"
        ui, ui_thread = create_proxy_ui(listen, upstream)
        ui_thread.start()

    try:
        while server_thread.is_alive() and not stop_requested.is_set():
            stop_requested.wait(JOIN_INTERVAL)
    except KeyboardInterrupt:
        logger.info("Received interrupt, initiating shutdown...")
    finally:
        if ui:
            ui.stop()
        server.stop()
        server_thread.join(JOIN_INTERVAL)
        logger.info("Server shutdown complete")

    if errors:
        raise errors[0]


@app.command(name="run")
def run_proxy(
    username: str = typer.Option("", "--username", envvar="UPSTREAM_USERNAME", help="Upstream SOCKS5 username"),
    password: str = typer.Option("", "--password", envvar="UPSTREAM_PASSWORD", help="Upstream SOCKS5 password"),
    encpass: str = typer.Option(
        "", "--encpass", envvar="SOCKS5CHAIN_PASSWORD", help="Password to encrypt/decrypt stored credentials"
    ),
    upstream_host: str = typer.Option("", "--upstream-host", help="Upstream SOCKS5 proxy hostname"),
    upstream_port: int = typer.Option(0, "--upstream-port", help="Upstream SOCKS5 proxy port"),
    local_host: str = typer.Option(DEFAULT_LOCAL_HOST, "--local-host", help="Local host to bind"),
    local_port: int = typer.Option(DEFAULT_LOCAL_PORT, "--local-port", help="Local port to bind"),
    log_file: Path | None = typer.Option(None, "--log-file", help="Log file location"),
    console_log: bool = typer.Option(
        default=False, help="Keep logging to the console when --log-file is given"
    ),
    debug: bool = typer.Option(default=False, help="Enable debug logging"),
    configure: bool = typer.Option(
        False, "--configure", help="Interactively enter credentials before starting"
    ),
    dashboard: bool = typer.Option(False, "--dashboard", help="Show a live status panel"),
    connect_timeout: float | None = typer.Option(
        None, "--connect-timeout", help="Upstream dial timeout in seconds (default: OS timeout)"
    ),
):
    """Start the relay."""
    setup_logging(
        level="DEBUG" if debug else "INFO",
        log_file=log_file,
        console=console_log or log_file is None,
    )

    store = CredentialStore()
    if configure:
        entered, encpass = ask_connection(upstream_host, upstream_port, local_host, local_port)
        username, password = entered.username, entered.password
        upstream_host = entered.upstream_host or upstream_host
        upstream_port = entered.upstream_port or upstream_port

    try:
        params = resolve_parameters(
            store, username, password, encpass, upstream_host, upstream_port, local_host, local_port
        )
    except ConfigError as e:
        logger.error(f"Error loading configuration: {e}")
        report_config_error(e)
        raise typer.Exit(1) from e

    console.print(f"[green]Starting SOCKS5 relay on {local_host}:{local_port}")
    try:
        serve(RelayServer(params, connect_timeout=connect_timeout), dashboard)
    except ListenerError as e:
        logger.error(f"Server error: {e}")
        console.print(f"[red]Server error: {e}")
        raise typer.Exit(1) from e


@app.command(name="configure")
def configure_credentials(
    upstream_host: str = typer.Option("", "--upstream-host", help="Default upstream host"),
    upstream_port: int = typer.Option(0, "--upstream-port", help="Default upstream port"),
):
    """Interactively store upstream credentials without starting the relay."""
    setup_logging(level="WARNING")
    params, passphrase = ask_connection(upstream_host, upstream_port)
    if not passphrase:
        console.print("[red]An encryption password is required to store credentials.")
        raise typer.Exit(1)

    store = CredentialStore()
    try:
        store.save(params.validate(), passphrase)
    except ConfigError as e:
        report_config_error(e)
        raise typer.Exit(1) from e
    console.print(f"[green]Credentials saved to {store.config_dir}")


@app.command(name="version")
def show_version():
    """Show version information."""
    console.print(f"[cyan]socks5-chain v{__version__}[/cyan]")


def main() -> None:
    app()


if __name__ == "__main__":
    sys.exit(main())
