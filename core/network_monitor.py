"""
Network monitor for Media Backup Engine
Detects when the backup server becomes reachable or unreachable
"""
import logging
import socket
import threading
from typing import Callable, Optional
import config

logger = logging.getLogger(__name__)


class NetworkMonitor:
    """Polls TCP reachability of a host and reports transitions"""

    def __init__(self, host: str, port: int,
                 check_interval: float = config.CHECK_NETWORK_INTERVAL_SECONDS,
                 connect_timeout: float = config.NETWORK_CHECK_TIMEOUT_SECONDS):
        self.host = host
        self.port = port
        self.check_interval = check_interval
        self.connect_timeout = connect_timeout
        self.last_state: Optional[bool] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def is_network_available(self) -> bool:
        """Check whether a TCP connection to the server can be opened"""
        try:
            with socket.create_connection((self.host, self.port), timeout=self.connect_timeout):
                return True
        except OSError:
            return False

    def check_once(self, callback: Callable[[bool], None]):
        """Check once and call callback(available) if the state changed"""
        available = self.is_network_available()
        if available != self.last_state:
            self.last_state = available
            logger.debug(f"Network to {self.host}:{self.port} available={available}")
            callback(available)
        return available

    def monitor_connection(self, callback: Callable[[bool], None]):
        """
        Monitor reachability until stop() is called
        Calls callback(available) when status changes
        """
        while not self._stop_event.is_set():
            self.check_once(callback)
            self._stop_event.wait(self.check_interval)

    def start(self, callback: Callable[[bool], None]):
        """Run monitor_connection on a background thread"""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.monitor_connection, args=(callback,),
            name="network-monitor", daemon=True
        )
        self._thread.start()

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=self.check_interval + self.connect_timeout)
            self._thread = None
