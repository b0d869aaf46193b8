"""
Reliable-messaging transport for tunnel sessions.

This module provides a KCP style ARQ running over asyncio UDP sockets. To the
bridge a tunnel session is an ordered duplex byte stream with half-close.
"""

from kcpbridge.transport.arq import KcpControlBlock
from kcpbridge.transport.exceptions import (
    ProtocolError,
    TunnelClosedError,
    TunnelConnectError,
    TunnelError,
    TunnelTimeoutError,
)
from kcpbridge.transport.protocol import (
    CMD_ACK,
    CMD_FIN,
    CMD_PUSH,
    CMD_SYN,
    CMD_WASK,
    CMD_WINS,
    HEADER_SIZE,
    Segment,
    iter_segments,
    peek_header,
)
from kcpbridge.transport.session import (
    TunnelListener,
    TunnelSession,
    TunnelWriter,
    open_session,
)

__all__ = [
    "CMD_ACK",
    "CMD_FIN",
    "CMD_PUSH",
    "CMD_SYN",
    "CMD_WASK",
    "CMD_WINS",
    "HEADER_SIZE",
    "KcpControlBlock",
    "ProtocolError",
    "Segment",
    "TunnelClosedError",
    "TunnelConnectError",
    "TunnelError",
    "TunnelListener",
    "TunnelSession",
    "TunnelTimeoutError",
    "TunnelWriter",
    "iter_segments",
    "open_session",
    "peek_header",
]
