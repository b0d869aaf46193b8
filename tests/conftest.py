import asyncio
import socket

import pytest
import pytest_asyncio

from kcpbridge.config import NoDelayProfile, TransportConfig


@pytest.fixture
def transport_config() -> TransportConfig:
    """Aggressive profile with short timers so tests finish quickly."""
    return TransportConfig(
        nodelay=NoDelayProfile(
            nodelay=True, interval=10, resend=2, no_congestion_control=True
        ),
        connect_timeout=2.0,
        linger_timeout=1.0,
    )


@pytest.fixture
def closed_tcp_port() -> int:
    """A loopback TCP port nothing listens on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def closed_udp_port() -> int:
    """A loopback UDP port nothing is bound to."""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest_asyncio.fixture
async def echo_server():
    """TCP echo server on loopback. Yields (host, port)."""

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        except OSError:
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    host, port = server.sockets[0].getsockname()[:2]
    yield host, port
    server.close()
