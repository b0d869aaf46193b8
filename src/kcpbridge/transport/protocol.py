"""
Tunnel segment wire format.

Every UDP datagram carries one or more segments packed back to back.

Segment layout (binary, little-endian, KCP compatible):
┌──────────┬─────────┬─────────┬─────────┬──────────┬──────────┬──────────┬──────────┬──────────────┐
│ Conv (4B)│ Cmd (1B)│ Frg (1B)│ Wnd (2B)│  Ts (4B) │  Sn (4B) │ Una (4B) │ Len (4B) │ Data (Len B) │
└──────────┴─────────┴─────────┴─────────┴──────────┴──────────┴──────────┴──────────┴──────────────┘

Total header: 24 bytes
"""

import struct
from collections.abc import Iterator
from dataclasses import dataclass

from kcpbridge.transport.exceptions import ProtocolError

# =============================================================================
# Commands
# =============================================================================

CMD_PUSH: int = 81  # Data segment
CMD_ACK: int = 82  # Acknowledgement of one sn
CMD_WASK: int = 83  # Window probe: ask the peer for its window
CMD_WINS: int = 84  # Window probe reply: tell the peer our window
CMD_SYN: int = 85  # Session open request / reply (outside the sequence space)
CMD_FIN: int = 86  # End of stream, occupies one sn so it is delivered in order

SEQUENCED_COMMANDS = (CMD_PUSH, CMD_FIN)
KNOWN_COMMANDS = (CMD_PUSH, CMD_ACK, CMD_WASK, CMD_WINS, CMD_SYN, CMD_FIN)

# =============================================================================
# Header Format
# =============================================================================

# conv(4) + cmd(1) + frg(1) + wnd(2) + ts(4) + sn(4) + una(4) + len(4) = 24 bytes
HEADER_FORMAT = "<IBBHIIII"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

U32_MASK = 0xFFFFFFFF
U16_MASK = 0xFFFF


@dataclass
class Segment:
    """A single tunnel segment plus the sender side retransmission state."""

    conv: int
    cmd: int
    frg: int = 0
    wnd: int = 0
    ts: int = 0
    sn: int = 0
    una: int = 0
    data: bytes = b""

    # Sender bookkeeping, never on the wire
    resendts: int = 0
    rto: int = 0
    fastack: int = 0
    xmit: int = 0

    def encode(self) -> bytes:
        """Serialize header and payload."""
        header = struct.pack(
            HEADER_FORMAT,
            self.conv & U32_MASK,
            self.cmd,
            self.frg,
            min(self.wnd, U16_MASK),
            self.ts & U32_MASK,
            self.sn & U32_MASK,
            self.una & U32_MASK,
            len(self.data),
        )
        return header + self.data


def iter_segments(datagram: bytes) -> Iterator[Segment]:
    """
    Decode all segments packed into one datagram.

    Raises:
        ProtocolError: If a header or payload is truncated or the command is
            unknown.
    """
    offset = 0
    total = len(datagram)
    while offset < total:
        if total - offset < HEADER_SIZE:
            raise ProtocolError(
                f"Truncated segment header ({total - offset} of {HEADER_SIZE} bytes)"
            )
        conv, cmd, frg, wnd, ts, sn, una, length = struct.unpack_from(
            HEADER_FORMAT, datagram, offset
        )
        offset += HEADER_SIZE
        if cmd not in KNOWN_COMMANDS:
            raise ProtocolError(f"Unknown segment command: {cmd}")
        if total - offset < length:
            raise ProtocolError(
                f"Truncated segment payload ({total - offset} of {length} bytes)"
            )
        data = bytes(datagram[offset : offset + length])
        offset += length
        yield Segment(
            conv=conv, cmd=cmd, frg=frg, wnd=wnd, ts=ts, sn=sn, una=una, data=data
        )


def peek_header(datagram: bytes) -> tuple[int, int] | None:
    """
    Read the conversation id and command of the first segment.

    Returns:
        Tuple of (conv, cmd) or None if the datagram is too short.
    """
    if len(datagram) < HEADER_SIZE:
        return None
    conv, cmd = struct.unpack_from("<IB", datagram, 0)
    return conv, cmd
