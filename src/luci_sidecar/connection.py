from __future__ import annotations

import logging
import socket

from luci_sidecar.errors import ConnectionFailure

logger = logging.getLogger(__name__)

DEFAULT_HOST = "localhost"


class ConnectionFactory:
    """Opens client sockets to the port reported by the sidecar."""

    def __init__(self, *, host: str = DEFAULT_HOST, connect_timeout_sec: float = 5.0) -> None:
        if connect_timeout_sec <= 0:
            raise ValueError("connect_timeout_sec must be > 0")
        self.host = host
        self.connect_timeout_sec = float(connect_timeout_sec)

    def connect(self, port: int) -> socket.socket:
        """
        Connect to `<host>:<port>`.

        The timeout only bounds the connect; the returned socket is switched back to blocking mode
        because the byte protocol on top of it belongs to the caller.

        Raises:
        - ConnectionFailure: refused, unreachable, timed out
        """

        try:
            sock = socket.create_connection((self.host, int(port)), timeout=self.connect_timeout_sec)
        except OSError as exc:
            raise ConnectionFailure(
                f"Could not connect to the sidecar at {self.host}:{port}.",
                details={"host": self.host, "port": int(port), "reason": str(exc)},
            ) from exc
        sock.settimeout(None)
        logger.debug("Connected to sidecar at %s:%s", self.host, port)
        return sock
