"""Base prompt handling and interactive configuration prompts."""

from prompt_toolkit import prompt
from rich.console import Console
from rich.live import Live

from socks5_chain.core.config import ConnectionParameters

console = Console()


class PromptHandler:
    """Base class for handling terminal prompts and UI."""

    def __init__(self) -> None:
        self._refresh_rate = 0.5  # Seconds between redraws

    def create_live_display(self, content, refresh_per_second: int = 4, transient: bool = False) -> Live:
        """Create a live display refreshed manually by the caller."""
        return Live(
            content,
            console=console,
            refresh_per_second=refresh_per_second,
            transient=transient,
            auto_refresh=False,
        )


def ask_passphrase(message: str = "Enter encryption password to decrypt credentials: ") -> str:
    """Read a passphrase without echoing it."""
    return prompt(message, is_password=True)


def ask_connection(
    upstream_host: str = "",
    upstream_port: int = 0,
    local_host: str = "127.0.0.1",
    local_port: int = 1080,
) -> tuple[ConnectionParameters, str]:
    """Interactively collect upstream settings and a new passphrase.

    Returns:
        tuple[ConnectionParameters, str]: Parameters (not yet validated) and passphrase
    """
    console.print("[cyan]Configure upstream SOCKS5 proxy")
    host = prompt("Upstream host: ", default=upstream_host).strip()
    port_text = prompt("Upstream port: ", default=str(upstream_port) if upstream_port else "").strip()
    username = prompt("Enter upstream username: ").strip()
    password = prompt("Enter upstream password: ", is_password=True)
    passphrase = prompt("Enter encryption password to protect credentials: ", is_password=True)

    params = ConnectionParameters(
        upstream_host=host,
        upstream_port=int(port_text) if port_text.isdigit() else 0,
        username=username,
        password=password,
        local_host=local_host,
        local_port=local_port,
    )
    return params, passphrase
