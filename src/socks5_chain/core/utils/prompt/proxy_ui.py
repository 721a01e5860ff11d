"""Live status panel for the relay."""

import threading
import time
from datetime import timedelta

from rich.panel import Panel
from rich.spinner import Spinner
from rich.table import Table
from rich.text import Text

from socks5_chain.core.lib.proxy_stats import ProxyStats, proxy_stats
from socks5_chain.core.utils.utils import format_bytes

from .prompt import PromptHandler

BANDWIDTH_THRESHOLD = 100  # bytes


class ProxyUI(PromptHandler):
    """UI handler for the relay."""

    def __init__(self, listen: str, upstream: str, stats: ProxyStats = proxy_stats) -> None:
        """Initialize the status panel.

        Args:
            listen: Address the relay listens on, as ``host:port``
            upstream: Upstream proxy address, as ``host:port``
            stats: Statistics tracker to display
        """
        super().__init__()
        self.listen = listen
        self.upstream = upstream
        self.stats = stats
        self.running = True
        self._last_bandwidth = 0
        self._start_time = time.monotonic()
        self._spinner = Spinner("dots", text="")

    def _generate_table(self) -> Table:
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("Property", style="cyan", no_wrap=True)
        table.add_column("Value", style="green", no_wrap=True)

        bandwidth = self.stats.get_bandwidth()
        if abs(bandwidth - self._last_bandwidth) > BANDWIDTH_THRESHOLD:
            self._last_bandwidth = bandwidth

        spinner_text = self._spinner.render(time.monotonic() - self._start_time)

        table.add_row("Upstream", self.upstream)
        table.add_row("Bandwidth", f"{spinner_text} {format_bytes(self._last_bandwidth)}/s")
        table.add_row("Active Connections", str(self.stats.active_connections))
        table.add_row("Total Connections", str(self.stats.total_connections))
        table.add_row("Failed Connections", str(self.stats.failed_connections))
        table.add_row("Sent Upstream", format_bytes(self.stats.total_bytes_sent))
        table.add_row("Received", format_bytes(self.stats.total_bytes_received))
        table.add_row("Uptime", str(timedelta(seconds=int(self.stats.uptime()))))
        return table

    def _generate_display(self) -> Panel:
        title = Text(f"SOCKS5 Relay: {self.listen}", style="bold cyan")
        return Panel(
            self._generate_table(),
            title=title,
            subtitle="Press Ctrl+C to exit",
            border_style="blue",
            padding=(1, 2),
        )

    def run(self) -> None:
        """Redraw the panel until ``stop()`` is called."""
        with self.create_live_display(self._generate_display()) as live:
            while self.running:
                live.update(self._generate_display(), refresh=True)
                time.sleep(self._refresh_rate)

    def stop(self) -> None:
        self.running = False


def create_proxy_ui(listen: str, upstream: str) -> tuple[ProxyUI, threading.Thread]:
    """Create the status panel and the daemon thread that drives it."""
    ui = ProxyUI(listen, upstream)
    return ui, threading.Thread(target=ui.run, name="status-ui", daemon=True)
