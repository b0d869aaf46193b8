"""
Tunnel sessions over asyncio UDP.

A ``TunnelSession`` drives one ``KcpControlBlock``: a ticker task flushes it
every ``interval`` milliseconds, received datagrams are fed into it, and the
ordered payload is pushed into a regular ``asyncio.StreamReader``. The write
side is exposed through ``TunnelWriter``, which mirrors the parts of
``asyncio.StreamWriter`` the bridge relies on.

Sessions are created either by ``TunnelListener`` (one UDP socket, sessions
demultiplexed by peer address and conversation id) or by ``open_session``
(one connected UDP socket per session).
"""

from __future__ import annotations

import asyncio
import secrets
from collections.abc import Callable
from typing import TYPE_CHECKING

from kcpbridge.transport.arq import RTO_DEFAULT, KcpControlBlock
from kcpbridge.transport.exceptions import (
    ProtocolError,
    TunnelClosedError,
    TunnelConnectError,
    TunnelTimeoutError,
)
from kcpbridge.transport.protocol import CMD_FIN, CMD_SYN, Segment, peek_header
from kcpbridge.utils.address import format_address
from kcpbridge.utils.logger import get_logger

if TYPE_CHECKING:
    from kcpbridge.config import TransportConfig

logger = get_logger(__name__)

Address = tuple

# Pending segments (queued + in flight) per window slot before drain() blocks
DRAIN_FACTOR = 2
SYN_RETRY_MAX = 1.0  # seconds between handshake retries, upper bound


# =============================================================================
# Tunnel Session
# =============================================================================


class TunnelSession:
    """
    One reliable, ordered, duplex byte stream over UDP.

    Lifecycle:
        open -> (write_eof: FIN queued) -> closing (close called)
             -> finished (all data acked and peer FIN seen, or linger expired)
        Any state -> aborted (dead link, transport lost)
    """

    def __init__(
        self,
        config: TransportConfig,
        conv: int,
        peer: Address,
        send: Callable[[bytes], None],
        on_finished: Callable[[TunnelSession], None] | None = None,
    ):
        """
        Initialize a tunnel session.

        Args:
            config: Shared transport configuration.
            conv: Conversation id agreed in the handshake.
            peer: Remote UDP address (for logging and extra info).
            send: Callable that transmits one datagram to the peer.
            on_finished: Called once when the session is released.
        """
        self.config = config
        self.conv = conv
        self.peer = peer
        # The reader pauses delivery once it buffers about one receive window;
        # undelivered segments then shrink the window advertised to the peer.
        self.reader = asyncio.StreamReader(limit=config.rcv_wnd * config.mss // 2)
        self.reader.set_transport(_DeliveryControl(self))
        self.writer = TunnelWriter(self)

        self._cb = KcpControlBlock(conv, config)
        self._send = send
        self._on_finished = on_finished
        self._loop = asyncio.get_running_loop()
        self._started_at = self._loop.time()
        self._last_recv = self._started_at
        self._last_keepalive = self._started_at
        self._ticker: asyncio.Task | None = None
        self._delivery_paused = False

        self._eof_sent = False
        self._eof_received = False
        self._closing = False
        self._linger_deadline = 0.0
        self._error: BaseException | None = None
        self._finished = asyncio.Event()
        self._send_space = asyncio.Event()
        self._send_space.set()

        self._log_prefix = f"[Tunnel {format_address(peer)} conv={conv}]"

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def is_finished(self) -> bool:
        return self._finished.is_set()

    @property
    def is_closing(self) -> bool:
        return self._closing or self.is_finished

    @property
    def eof_sent(self) -> bool:
        return self._eof_sent

    @property
    def eof_received(self) -> bool:
        return self._eof_received

    def _now(self) -> int:
        return int((self._loop.time() - self._started_at) * 1000)

    def start(self) -> None:
        """Start the ticker task."""
        if self._ticker is None:
            self._ticker = asyncio.create_task(
                self._run(), name=f"tunnel-ticker-{self.conv}"
            )

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    def datagram_received(self, data: bytes) -> None:
        """Feed one datagram addressed to this session."""
        if self.is_finished:
            return

        self._cb.current = self._now()
        try:
            self._cb.input(data)
        except ProtocolError as e:
            logger.debug(f"{self._log_prefix} Dropping malformed datagram: {e}")
            return

        self._last_recv = self._loop.time()
        self._deliver()
        if self._cb.acklist or self._cb.probe:
            self._flush()
        self._update_send_space()

    def _deliver(self) -> None:
        # One segment at a time so a pause takes effect immediately
        while not self._delivery_paused:
            segments = self._cb.recv(max_segments=1)
            if not segments:
                return
            seg = segments[0]
            if seg.cmd == CMD_FIN:
                if not self._eof_received:
                    self._eof_received = True
                    logger.debug(f"{self._log_prefix} Peer closed its side.")
                    self.reader.feed_eof()
            elif not self._eof_received:
                self.reader.feed_data(seg.data)

    def _pause_delivery(self) -> None:
        self._delivery_paused = True

    def _resume_delivery(self) -> None:
        """Called from the reader once its buffer drained below the limit."""
        self._delivery_paused = False
        if self.is_finished:
            return
        self._deliver()
        if self._cb.probe:
            self._flush()

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    def send(self, data: bytes) -> None:
        """Queue payload for transmission."""
        self._raise_if_failed()
        if self._eof_sent:
            raise TunnelClosedError("Cannot write after write_eof()")
        self._cb.send(bytes(data))
        self._update_send_space()

    def send_eof(self) -> None:
        """Queue FIN behind all pending data. Idempotent."""
        self._raise_if_failed()
        if self._eof_sent:
            return
        self._eof_sent = True
        self._cb.send_fin()

    async def wait_send_space(self) -> None:
        """Block while too many segments are pending."""
        while True:
            self._raise_if_failed()
            if self._has_send_space():
                return
            self._send_space.clear()
            await self._send_space.wait()

    def _has_send_space(self) -> bool:
        return self._cb.waitsnd < DRAIN_FACTOR * self._cb.snd_wnd

    def _update_send_space(self) -> None:
        if self._error is not None or self._has_send_space():
            self._send_space.set()

    def _flush(self) -> None:
        self._cb.current = self._now()
        for datagram in self._cb.flush():
            try:
                self._send(datagram)
            except OSError as e:
                logger.debug(f"{self._log_prefix} Send failed: {e}")

    def _raise_if_failed(self) -> None:
        if self._error is not None:
            raise self._error
        if self.is_finished:
            raise TunnelClosedError("Tunnel session is closed")

    # -------------------------------------------------------------------------
    # Closing
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """
        Close the session.

        Queues FIN if it was not sent yet; the session keeps retransmitting
        until everything is acknowledged and the peer's FIN arrived, or until
        ``linger_timeout`` expires.
        """
        if self._closing or self.is_finished:
            return
        self._closing = True
        self._linger_deadline = self._loop.time() + self.config.linger_timeout
        if self._error is None and not self._eof_sent:
            self.send_eof()
        if self._ticker is None:
            self._release()
        else:
            self._flush()

    async def wait_closed(self) -> None:
        await self._finished.wait()

    def abort(self, exc: BaseException | None = None) -> None:
        """Drop the session immediately, failing pending reads and writes."""
        if self.is_finished:
            return
        self._error = exc or TunnelClosedError("Tunnel session aborted")
        if not self._eof_received:
            self.reader.set_exception(self._error)
        self._release()

    def _release(self) -> None:
        if self.is_finished:
            return
        if self._error is None and not self._eof_received:
            self.reader.feed_eof()
        self._finished.set()
        self._send_space.set()
        if self._ticker is not None and self._ticker is not asyncio.current_task():
            self._ticker.cancel()
        if self._on_finished is not None:
            self._on_finished(self)
        logger.debug(f"{self._log_prefix} Session released.")

    async def _run(self) -> None:
        interval = self._cb.interval / 1000
        while not self.is_finished:
            await asyncio.sleep(interval)
            now = self._loop.time()
            if now - self._last_keepalive >= self.config.keepalive_interval:
                self._last_keepalive = now
                self._cb.keepalive()
            self._flush()
            self._update_send_space()

            if self._cb.dead:
                logger.warning(
                    f"{self._log_prefix} Peer stopped acknowledging, session is dead."
                )
                self.abort(TunnelTimeoutError("Tunnel peer stopped responding"))
                return

            if now - self._last_recv >= self.config.session_expire:
                logger.warning(
                    f"{self._log_prefix} Nothing heard from peer for "
                    f"{self.config.session_expire}s, session expired."
                )
                self.abort(TunnelTimeoutError("Tunnel peer went silent"))
                return

            if self._closing:
                if self._cb.idle and self._eof_received:
                    self._release()
                    return
                if self._loop.time() >= self._linger_deadline:
                    logger.debug(
                        f"{self._log_prefix} Linger timeout, "
                        f"{self._cb.waitsnd} segments unacknowledged."
                    )
                    self._release()
                    return


class TunnelWriter:
    """StreamWriter-like write side of a ``TunnelSession``."""

    def __init__(self, session: TunnelSession):
        self._session = session

    @property
    def session(self) -> TunnelSession:
        return self._session

    def write(self, data: bytes) -> None:
        self._session.send(data)

    async def drain(self) -> None:
        await self._session.wait_send_space()

    def can_write_eof(self) -> bool:
        return True

    def write_eof(self) -> None:
        self._session.send_eof()

    def close(self) -> None:
        self._session.close()

    def is_closing(self) -> bool:
        return self._session.is_closing

    async def wait_closed(self) -> None:
        await self._session.wait_closed()

    def get_extra_info(self, name: str, default=None):
        if name == "peername":
            return self._session.peer
        if name == "conv":
            return self._session.conv
        return default


class _DeliveryControl:
    """
    Flow control hook installed as the transport of a session's reader.

    ``asyncio.StreamReader`` calls ``pause_reading`` when its buffer exceeds
    twice its limit and ``resume_reading`` once a read brought it back under
    the limit.
    """

    def __init__(self, session: TunnelSession):
        self._session = session

    def pause_reading(self) -> None:
        self._session._pause_delivery()

    def resume_reading(self) -> None:
        self._session._resume_delivery()


def _new_conv() -> int:
    return secrets.randbits(32) or 1


# =============================================================================
# Listener
# =============================================================================


class _ListenerProtocol(asyncio.DatagramProtocol):
    def __init__(self, listener: TunnelListener):
        self._listener = listener

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._listener._transport = transport

    def datagram_received(self, data: bytes, addr: Address) -> None:
        self._listener._datagram_received(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.debug(f"Tunnel listener socket error: {exc}")

    def connection_lost(self, exc: Exception | None) -> None:
        self._listener._connection_lost(exc)


class TunnelListener:
    """
    Accepts tunnel sessions on one UDP socket.

    A session is created when a SYN arrives from an unknown (peer, conv)
    pair and at most ``backlog`` sessions are waiting for ``accept``.
    Further SYNs are dropped; the dialer retries them.
    """

    def __init__(self, config: TransportConfig, backlog: int = 5):
        self.config = config
        self.backlog = backlog
        self._transport: asyncio.DatagramTransport | None = None
        self._sessions: dict[tuple[Address, int], TunnelSession] = {}
        self._pending: asyncio.Queue[tuple[TunnelSession, Address] | None] = (
            asyncio.Queue()
        )
        self._closed = False
        self._closed_event = asyncio.Event()

    @classmethod
    async def bind(
        cls,
        host: str,
        port: int,
        config: TransportConfig,
        backlog: int = 5,
    ) -> TunnelListener:
        """
        Bind a UDP socket and start listening for sessions.

        Raises:
            OSError: If the address cannot be bound.
        """
        listener = cls(config, backlog)
        loop = asyncio.get_running_loop()
        await loop.create_datagram_endpoint(
            lambda: _ListenerProtocol(listener), local_addr=(host, port)
        )
        logger.debug(f"Tunnel listener bound to {listener.sockname}")
        return listener

    @property
    def sockname(self) -> Address | None:
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    async def accept(self) -> tuple[TunnelSession, Address]:
        """
        Wait for the next session.

        Raises:
            TunnelClosedError: If the listener is or gets closed.
        """
        if self._closed:
            raise TunnelClosedError("Tunnel listener is closed")
        item = await self._pending.get()
        if item is None:
            self._pending.put_nowait(None)
            raise TunnelClosedError("Tunnel listener is closed")
        return item

    def _datagram_received(self, data: bytes, addr: Address) -> None:
        header = peek_header(data)
        if header is None:
            logger.debug(f"Dropping runt datagram from {addr} ({len(data)} bytes)")
            return
        conv, cmd = header
        key = (addr, conv)
        session = self._sessions.get(key)

        if cmd == CMD_SYN:
            if session is None:
                session = self._open(addr, conv)
                if session is None:
                    return
            self._reply_syn(addr, conv)
            return

        if session is None:
            logger.debug(f"Dropping datagram for unknown session conv={conv} from {addr}")
            return
        session.datagram_received(data)

    def _open(self, addr: Address, conv: int) -> TunnelSession | None:
        if self._closed:
            return None
        if self._pending.qsize() >= self.backlog:
            logger.warning(
                f"Accept backlog full ({self.backlog}), dropping session request from {addr}"
            )
            return None

        key = (addr, conv)

        def send(datagram: bytes) -> None:
            if self._transport is not None and not self._transport.is_closing():
                self._transport.sendto(datagram, addr)

        session = TunnelSession(
            self.config,
            conv,
            addr,
            send,
            on_finished=lambda s: self._sessions.pop(key, None),
        )
        self._sessions[key] = session
        session.start()
        self._pending.put_nowait((session, addr))
        logger.debug(f"New tunnel session conv={conv} from {addr}")
        return session

    def _reply_syn(self, addr: Address, conv: int) -> None:
        if self._transport is None or self._transport.is_closing():
            return
        syn = Segment(conv=conv, cmd=CMD_SYN, wnd=self.config.rcv_wnd).encode()
        self._transport.sendto(syn, addr)

    def _connection_lost(self, exc: Exception | None) -> None:
        self._closed = True
        for session in list(self._sessions.values()):
            session.abort(TunnelClosedError("Tunnel listener socket closed"))
        self._sessions.clear()
        self._pending.put_nowait(None)
        self._closed_event.set()

    def close(self) -> None:
        """Stop accepting and close the socket, aborting all sessions."""
        if self._closed:
            return
        self._closed = True
        self._pending.put_nowait(None)
        if self._transport is not None:
            self._transport.close()
        else:
            self._closed_event.set()

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    async def __aenter__(self) -> TunnelListener:
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()
        await self.wait_closed()


# =============================================================================
# Dialing
# =============================================================================


class _DialProtocol(asyncio.DatagramProtocol):
    def __init__(self, config: TransportConfig, conv: int, peer: Address):
        self.config = config
        self.conv = conv
        self.peer = peer
        self.session: TunnelSession | None = None
        self.transport: asyncio.DatagramTransport | None = None
        self.established: asyncio.Future = asyncio.get_running_loop().create_future()

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr: Address) -> None:
        header = peek_header(data)
        if header is None or header[0] != self.conv:
            return

        if header[1] == CMD_SYN:
            if not self.established.done():
                self._establish()
            return

        if self.session is not None:
            self.session.datagram_received(data)

    def _establish(self) -> None:
        transport = self.transport

        def send(datagram: bytes) -> None:
            if not transport.is_closing():
                transport.sendto(datagram)

        self.session = TunnelSession(
            self.config,
            self.conv,
            self.peer,
            send,
            on_finished=lambda s: transport.close(),
        )
        self.session.start()
        self.established.set_result(self.session)

    def error_received(self, exc: Exception) -> None:
        if not self.established.done():
            self.established.set_exception(
                TunnelConnectError(
                    f"Tunnel endpoint {format_address(self.peer)} refused: {exc}",
                    self.peer,
                )
            )
        else:
            logger.debug(f"Tunnel socket error for conv={self.conv}: {exc}")

    def connection_lost(self, exc: Exception | None) -> None:
        if not self.established.done():
            self.established.cancel()
        if self.session is not None:
            self.session.abort(TunnelClosedError("Tunnel socket closed"))

    async def handshake(self, timeout: float) -> TunnelSession:
        loop = asyncio.get_running_loop()
        syn = Segment(conv=self.conv, cmd=CMD_SYN, wnd=self.config.rcv_wnd).encode()
        deadline = loop.time() + timeout
        delay = RTO_DEFAULT / 1000

        while not self.established.done():
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TunnelConnectError(
                    f"No reply from tunnel endpoint {format_address(self.peer)} "
                    f"within {timeout}s",
                    self.peer,
                )
            self.transport.sendto(syn)
            try:
                await asyncio.wait_for(
                    asyncio.shield(self.established), min(delay, remaining)
                )
            except asyncio.TimeoutError:
                delay = min(delay * 2, SYN_RETRY_MAX)

        return self.established.result()


async def open_session(
    host: str,
    port: int,
    config: TransportConfig,
    timeout: float | None = None,
) -> TunnelSession:
    """
    Dial a tunnel endpoint and complete the handshake.

    Args:
        host: Remote host.
        port: Remote UDP port.
        config: Shared transport configuration.
        timeout: Handshake timeout, defaults to ``config.connect_timeout``.

    Returns:
        An established TunnelSession.

    Raises:
        TunnelConnectError: If the endpoint refused, could not be resolved or
            did not answer in time.
    """
    loop = asyncio.get_running_loop()
    conv = _new_conv()
    timeout = config.connect_timeout if timeout is None else timeout

    try:
        transport, protocol = await loop.create_datagram_endpoint(
            lambda: _DialProtocol(config, conv, (host, port)),
            remote_addr=(host, port),
        )
    except OSError as e:
        raise TunnelConnectError(
            f"Cannot reach tunnel endpoint {host}:{port}: {e}", (host, port)
        ) from e

    try:
        return await protocol.handshake(timeout)
    except BaseException:
        if not protocol.established.done():
            protocol.established.cancel()
        transport.close()
        raise


