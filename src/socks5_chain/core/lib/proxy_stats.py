"""Statistics tracking for the relay.

This module keeps running counters for the relay, including:
- Active connection counting
- Bytes relayed in each direction
- Recent bandwidth history

The counters are updated from every connection handler thread, so all
access goes through a lock.

Example:
    from .proxy_stats import proxy_stats

    proxy_stats.connection_started()
    proxy_stats.update_bytes(sent=1024, received=0)
"""

import threading
import time
from collections import deque
from datetime import UTC, datetime


class ProxyStats:
    """Thread-safe statistics tracker for the relay.

    ``sent`` counts bytes copied from clients to the upstream and
    ``received`` counts bytes copied from the upstream back to clients.
    """

    def __init__(self) -> None:
        self.active_connections = 0
        self.total_connections = 0
        self.failed_connections = 0
        self.total_bytes_sent = 0
        self.total_bytes_received = 0
        self.bandwidth_history = deque(maxlen=60)
        self.start_time = datetime.now(tz=UTC)
        self._lock = threading.Lock()

    def update_bytes(self, sent: int, received: int) -> None:
        """Update byte transfer statistics.

        Args:
            sent: Number of bytes sent upstream
            received: Number of bytes returned to the client
        """
        with self._lock:
            self.total_bytes_sent += sent
            self.total_bytes_received += received
            self.bandwidth_history.append((sent + received, time.time()))

    def get_bandwidth(self) -> float:
        """Average bandwidth over the last 5 seconds in bytes/second."""
        with self._lock:
            cutoff = time.time() - 5
            recent = [bytes_ for bytes_, ts in self.bandwidth_history if ts > cutoff]
            return sum(recent) / 5 if recent else 0

    def connection_started(self) -> None:
        with self._lock:
            self.active_connections += 1
            self.total_connections += 1

    def connection_failed(self) -> None:
        with self._lock:
            self.failed_connections += 1

    def connection_ended(self) -> None:
        with self._lock:
            self.active_connections -= 1

    def uptime(self) -> float:
        """Seconds since the tracker was created."""
        return (datetime.now(tz=UTC) - self.start_time).total_seconds()


# Global statistics object
proxy_stats = ProxyStats()
