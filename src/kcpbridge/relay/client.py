"""
Client role.

Accepts local TCP connections and forwards each one over a newly opened
tunnel session to the fixed remote tunnel endpoint.
"""

import asyncio
import uuid

from kcpbridge.config import BridgeConfig, TransportConfig
from kcpbridge.relay.bridge import SessionOutcome
from kcpbridge.relay.dispatch import OutcomeSink, SessionDispatcher
from kcpbridge.transport import TunnelError, open_session
from kcpbridge.utils.address import format_address
from kcpbridge.utils.logger import get_logger

logger = get_logger(__name__)


class TunnelClient:
    """TCP connections in, tunnel sessions to the remote endpoint out."""

    def __init__(
        self,
        config: BridgeConfig,
        transport_config: TransportConfig,
        on_outcome: OutcomeSink | None = None,
    ):
        """
        Initialize the client role.

        Args:
            config: Bridge configuration (LISTEN_ADDR is the local TCP listen
                address, PROXY_ADDR the remote tunnel endpoint).
            transport_config: Shared transport configuration.
            on_outcome: Optional sink receiving every session outcome.

        Raises:
            ValueError: If one of the addresses is malformed.
        """
        self.config = config
        self.transport_config = transport_config
        self.listen_host, self.listen_port = config.listen_address()
        self.remote_host, self.remote_port = config.proxy_address()
        self.dispatcher = SessionDispatcher(
            on_outcome,
            buffer_size=config.BUFFER_SIZE,
            shutdown_timeout=config.SHUTDOWN_TIMEOUT,
        )
        self._server: asyncio.Server | None = None

    @property
    def address(self) -> tuple | None:
        """Bound TCP address, available after ``start``."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()

    async def start(self) -> None:
        """
        Start listening for local TCP connections.

        Raises:
            OSError: If the TCP address cannot be bound.
        """
        self._server = await asyncio.start_server(
            self._handle_connection, self.listen_host, self.listen_port
        )
        addrs = ", ".join(format_address(s.getsockname()) for s in self._server.sockets)
        logger.info(f"Client TCP listening on {addrs}")
        logger.info(
            f"Begin forward task: tcp://{addrs} "
            f"<-> kcp://{self.remote_host}:{self.remote_port}"
        )

    async def serve_forever(self) -> None:
        """Accept connections until stopped."""
        if self._server is None:
            await self.start()
        try:
            await self._server.serve_forever()
        except asyncio.CancelledError:
            logger.info("Client listener task cancelled.")
            raise

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Dial the tunnel endpoint for one accepted connection and bridge the pair."""
        self.dispatcher.track(asyncio.current_task())
        session_id = str(uuid.uuid4())
        log_prefix = f"[Session {session_id}]"
        peer = writer.get_extra_info("peername")
        remote = f"{self.remote_host}:{self.remote_port}"
        logger.info(
            f"New connection from {format_address(peer)}, with session id {session_id}"
        )

        try:
            session = await open_session(
                self.remote_host,
                self.remote_port,
                self.transport_config,
                timeout=self.config.DIAL_TIMEOUT,
            )
        except (TunnelError, OSError) as e:
            logger.warning(
                f"{log_prefix} Failed to connect to kcp endpoint ({remote}): {e}"
            )
            writer.close()
            try:
                await asyncio.wait_for(
                    writer.wait_closed(), timeout=self.config.SHUTDOWN_TIMEOUT
                )
            except (OSError, asyncio.TimeoutError):
                pass
            self.dispatcher.report(SessionOutcome.dial_failure(session_id, e))
            return
        except asyncio.CancelledError:
            writer.close()
            raise

        logger.debug(f"{log_prefix} Tunnel session established to {remote}.")
        await self.dispatcher.bridge(
            session_id, reader, writer, session.reader, session.writer
        )

    async def stop(self) -> None:
        """Stop listening and cancel all in-flight sessions."""
        if self._server is not None:
            self._server.close()
        await self.dispatcher.shutdown()
        if self._server is not None:
            await self._server.wait_closed()
