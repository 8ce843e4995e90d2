"""UDP server that echoes or discards every datagram it receives; used as
the target of UDP probes."""

from __future__ import annotations

import argparse
import enum
import logging
import socket
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_PORT = 31122
# Receive buffer size: large, so that many datagrams can be outstanding.
READ_BUF_SIZE = 425984
# Only this many bytes of a datagram are read and echoed back.
MAX_DATAGRAM = 4098
_POLL_INTERVAL = 0.1


class UDPServerType(enum.Enum):
    ECHO = "echo"
    DISCARD = "discard"


@dataclass
class UDPConfig:
    """Settings of a UDP server."""

    port: int = DEFAULT_PORT
    type: UDPServerType = UDPServerType.ECHO


def listen(port: int) -> socket.socket:
    """Open a UDP socket on port, with a large receive buffer if allowed."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.bind(("", port))
    except OSError:
        sock.close()
        raise
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, READ_BUF_SIZE)
    except OSError as err:
        logger.error(
            "Error setting UDP socket %s read buffer to %d: %s. Continuing...",
            sock.getsockname(), READ_BUF_SIZE, err,
        )
    return sock


class UDPServer:
    """Echo or discard server on one UDP socket."""

    def __init__(self, config: UDPConfig | None = None) -> None:
        self.config = config or UDPConfig()
        self._sock = listen(self.config.port)
        self._sock.settimeout(_POLL_INTERVAL)
        self._closed = False

    @property
    def port(self) -> int:
        """The port the socket is bound to."""
        return self._sock.getsockname()[1]

    def start(self, stop_event: threading.Event) -> None:
        """Serve until stop_event is set, then close the socket."""
        if self.config.type is UDPServerType.ECHO:
            handler = self._read_and_echo
        else:
            handler = self._read_and_discard
        logger.info("Starting UDP %s server on port %d", self.config.type.name, self.port)
        try:
            while not stop_event.is_set() and not self._closed:
                handler()
        finally:
            self.close()

    def close(self) -> None:
        """Close the socket; safe to call more than once."""
        if not self._closed:
            self._closed = True
            self._sock.close()

    def __enter__(self) -> "UDPServer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _receive(self) -> tuple[bytes, tuple] | None:
        try:
            return self._sock.recvfrom(MAX_DATAGRAM)
        except TimeoutError:
            return None
        except OSError as err:
            if not self._closed:
                logger.error("ReadFromUDP: %s", err)
            return None

    def _read_and_echo(self) -> None:
        received = self._receive()
        if received is None:
            return
        data, addr = received
        try:
            sent = self._sock.sendto(data, addr)
        except OSError as err:
            logger.error("WriteToUDP: %s", err)
            return
        if sent < len(data):
            logger.warning(
                "Reply truncated! Got %d bytes but only sent %d bytes", len(data), sent
            )

    def _read_and_discard(self) -> None:
        self._receive()


def main(argv: list[str] | None = None) -> int:
    """Run a stand-alone UDP server until interrupted."""
    parser = argparse.ArgumentParser(description="Stand-alone UDP echo/discard server.")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Port to listen on")
    parser.add_argument(
        "--type",
        choices=[t.value for t in UDPServerType],
        default=UDPServerType.ECHO.value,
        help="Server type: echo|discard",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    try:
        server = UDPServer(UDPConfig(port=args.port, type=UDPServerType(args.type)))
    except OSError as err:
        logger.critical("Error creating a new UDP server: %s", err)
        return 1
    try:
        server.start(threading.Event())
    except KeyboardInterrupt:
        server.close()
    return 0