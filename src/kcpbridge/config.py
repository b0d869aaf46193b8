"""
Configuration for kcpbridge.

Two kinds of configuration live here:

* ``TransportConfig``: immutable tuning of the reliable-messaging transport,
  built once at startup and shared by reference with every tunnel session.
* ``BridgeConfig``: process level settings produced by the CLI (role,
  addresses, timeouts) and handed to the selected role.

Usage:
    from kcpbridge.config import BridgeConfig, TransportConfig

    transport = TransportConfig(mtu=1200)
    config = BridgeConfig(MODE=RelayMode.CLIENT, PROXY_ADDR="203.0.113.7:25565")
"""

from dataclasses import dataclass, field

from kcpbridge.models.enums import LogLevel, RelayMode
from kcpbridge.transport.protocol import HEADER_SIZE
from kcpbridge.utils.address import parse_address


# =============================================================================
# Transport Configuration
# =============================================================================


@dataclass(frozen=True)
class NoDelayProfile:
    """
    Retransmission profile of the transport.

    Attributes:
        nodelay: Use the low minimum RTO and gentle (1.5x) timeout backoff.
        interval: Internal flush interval in milliseconds.
        resend: Fast retransmit after this many later segments were acked
            (0 disables fast retransmit).
        no_congestion_control: Ignore the congestion window and send up to the
            smaller of the local send window and the remote receive window.
    """

    nodelay: bool = False
    interval: int = 100
    resend: int = 0
    no_congestion_control: bool = False

    @classmethod
    def normal(cls) -> "NoDelayProfile":
        """Conservative profile, bandwidth friendly."""
        return cls(nodelay=False, interval=100, resend=0, no_congestion_control=False)

    @classmethod
    def fastest(cls) -> "NoDelayProfile":
        """Aggressive profile used for interactive forwarding."""
        return cls(nodelay=True, interval=40, resend=2, no_congestion_control=True)


@dataclass(frozen=True)
class TransportConfig:
    """
    Tuning parameters of the reliable-messaging transport.

    Attributes:
        mtu: Maximum datagram size, header included.
        stream: Byte-stream framing (consecutive writes coalesce into full
            segments). Message framing is never used by the bridge.
        nodelay: Retransmission profile.
        rcv_wnd: Receive window in segments.
        snd_wnd: Send window in segments.
        connect_timeout: Seconds a dial waits for the handshake reply.
        dead_link: Transmissions of one segment after which the session is
            considered dead.
        linger_timeout: Seconds a closed session keeps retransmitting unacked
            data before it is released.
        keepalive_interval: Seconds between window updates sent on an
            otherwise quiet session.
        session_expire: Seconds without any datagram from the peer after
            which the session is declared dead.
    """

    mtu: int = 1400
    stream: bool = True
    nodelay: NoDelayProfile = field(default_factory=NoDelayProfile.fastest)
    rcv_wnd: int = 1024
    snd_wnd: int = 1024
    connect_timeout: float = 10.0
    dead_link: int = 20
    linger_timeout: float = 5.0
    keepalive_interval: float = 10.0
    session_expire: float = 90.0

    @property
    def mss(self) -> int:
        """Maximum payload carried by one segment."""
        return self.mtu - HEADER_SIZE


DEFAULT_TRANSPORT_CONFIG = TransportConfig()


# =============================================================================
# Bridge Configuration
# =============================================================================


@dataclass
class BridgeConfig:
    """
    Process configuration for one bridge role.

    Attributes:
        MODE: Which role to run.
        PROXY_ADDR: Server role: upstream TCP address dialed per session.
            Client role: remote tunnel endpoint dialed per connection.
        LISTEN_ADDR: Server role: local UDP bind address.
            Client role: local TCP listen address.
        BACKLOG: Tunnel sessions that may wait for ``accept``.
        DIAL_TIMEOUT: Seconds allowed for the single outbound dial attempt.
        BUFFER_SIZE: Read size of each relay direction.
        SHUTDOWN_TIMEOUT: Seconds to wait for each half to finish closing.
        LOG_LEVEL: Logging verbosity.
    """

    # -------------------------------------------------------------------------
    # Role & Network Configuration
    # -------------------------------------------------------------------------

    MODE: RelayMode
    PROXY_ADDR: str
    LISTEN_ADDR: str = "0.0.0.0:25565"
    BACKLOG: int = 5

    # -------------------------------------------------------------------------
    # Session Configuration
    # -------------------------------------------------------------------------

    DIAL_TIMEOUT: float = 10.0
    BUFFER_SIZE: int = 4096
    SHUTDOWN_TIMEOUT: float = 1.0

    # -------------------------------------------------------------------------
    # Logging Configuration
    # -------------------------------------------------------------------------

    LOG_LEVEL: LogLevel = LogLevel.INFO

    def listen_address(self) -> tuple[str, int]:
        """Parsed LISTEN_ADDR."""
        return parse_address(self.LISTEN_ADDR)

    def proxy_address(self) -> tuple[str, int]:
        """Parsed PROXY_ADDR."""
        return parse_address(self.PROXY_ADDR)
