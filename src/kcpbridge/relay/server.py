"""
Server role.

Accepts tunnel sessions on a UDP endpoint and forwards each one to a newly
dialed TCP connection to the fixed upstream address.
"""

import asyncio
import uuid

from kcpbridge.config import BridgeConfig, TransportConfig
from kcpbridge.relay.bridge import SessionOutcome
from kcpbridge.relay.dispatch import OutcomeSink, SessionDispatcher
from kcpbridge.transport import TunnelClosedError, TunnelListener, TunnelSession
from kcpbridge.utils.address import format_address
from kcpbridge.utils.logger import get_logger

logger = get_logger(__name__)


class TunnelServer:
    """Tunnel sessions in, TCP connections to the upstream out."""

    def __init__(
        self,
        config: BridgeConfig,
        transport_config: TransportConfig,
        on_outcome: OutcomeSink | None = None,
    ):
        """
        Initialize the server role.

        Args:
            config: Bridge configuration (LISTEN_ADDR is the UDP bind address,
                PROXY_ADDR the upstream TCP address).
            transport_config: Shared transport configuration.
            on_outcome: Optional sink receiving every session outcome.

        Raises:
            ValueError: If one of the addresses is malformed.
        """
        self.config = config
        self.transport_config = transport_config
        self.listen_host, self.listen_port = config.listen_address()
        self.upstream_host, self.upstream_port = config.proxy_address()
        self.dispatcher = SessionDispatcher(
            on_outcome,
            buffer_size=config.BUFFER_SIZE,
            shutdown_timeout=config.SHUTDOWN_TIMEOUT,
        )
        self._listener: TunnelListener | None = None

    @property
    def address(self) -> tuple | None:
        """Bound UDP address, available after ``start``."""
        return self._listener.sockname if self._listener else None

    async def start(self) -> None:
        """
        Bind the tunnel listener.

        Raises:
            OSError: If the UDP address cannot be bound.
        """
        self._listener = await TunnelListener.bind(
            self.listen_host,
            self.listen_port,
            self.transport_config,
            backlog=self.config.BACKLOG,
        )
        logger.info(f"Server UDP bound to {format_address(self.address)}")
        logger.info(
            f"Begin forward task: tcp://{self.upstream_host}:{self.upstream_port} "
            f"<-> kcp://{format_address(self.address)}"
        )

    async def serve_forever(self) -> None:
        """Accept sessions until the listener is closed."""
        if self._listener is None:
            await self.start()

        while True:
            logger.debug("Waiting for new client connection...")
            try:
                session, peer = await self._listener.accept()
            except TunnelClosedError:
                logger.info("Tunnel listener closed, accept loop stopped.")
                return

            session_id = str(uuid.uuid4())
            logger.info(
                f"New connection from client {format_address(peer)}, "
                f"with session id {session_id}"
            )
            self.dispatcher.spawn(self._handle_session(session, session_id), session_id)

    async def _handle_session(self, session: TunnelSession, session_id: str) -> None:
        """Dial the upstream for one accepted session and bridge the pair."""
        log_prefix = f"[Session {session_id}]"
        upstream = f"{self.upstream_host}:{self.upstream_port}"

        try:
            logger.debug(f"{log_prefix} Connecting to tcp endpoint {upstream}...")
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.upstream_host, self.upstream_port),
                timeout=self.config.DIAL_TIMEOUT,
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(
                f"{log_prefix} Failed to connect to tcp endpoint ({upstream}): {e!r}"
            )
            session.close()
            self.dispatcher.report(SessionOutcome.dial_failure(session_id, e))
            return
        except asyncio.CancelledError:
            session.abort()
            raise

        logger.debug(f"{log_prefix} Proxy connection established to {upstream}.")
        await self.dispatcher.bridge(
            session_id, reader, writer, session.reader, session.writer
        )

    async def stop(self) -> None:
        """Close the listener and cancel all in-flight sessions."""
        if self._listener is not None:
            self._listener.close()
            await self._listener.wait_closed()
        await self.dispatcher.shutdown()
