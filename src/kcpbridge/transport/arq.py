"""
Automatic repeat request engine for tunnel sessions.

``KcpControlBlock`` is a sans-IO port of the KCP algorithm: it never touches a
socket or a clock. The owner feeds received datagrams into ``input``, sets
``current`` (milliseconds) and periodically calls ``flush`` to obtain the
datagrams that must be sent. Ordered payload comes out of ``recv``.
"""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

from kcpbridge.transport.exceptions import ProtocolError
from kcpbridge.transport.protocol import (
    CMD_ACK,
    CMD_FIN,
    CMD_PUSH,
    CMD_WASK,
    CMD_WINS,
    HEADER_SIZE,
    SEQUENCED_COMMANDS,
    Segment,
    iter_segments,
)

if TYPE_CHECKING:
    from kcpbridge.config import TransportConfig

# =============================================================================
# Constants
# =============================================================================

RTO_NODELAY = 30  # Minimum RTO in nodelay mode (ms)
RTO_MIN = 100  # Minimum RTO otherwise (ms)
RTO_DEFAULT = 200
RTO_MAX = 60000

ASK_SEND = 1  # Need to send WASK
ASK_TELL = 2  # Need to send WINS

THRESH_INIT = 2
THRESH_MIN = 2

PROBE_INIT = 7000  # First window probe after 7s of zero remote window
PROBE_LIMIT = 120000

NO_FASTRESEND = 0xFFFFFFFF


class KcpControlBlock:
    """
    Reliability state of one conversation.

    Send path: ``send``/``send_fin`` queue segments, ``flush`` moves them into
    the in-flight buffer as the windows allow and (re)transmits them.
    Receive path: ``input`` acknowledges and reorders, ``recv`` hands out the
    contiguous prefix.
    """

    def __init__(self, conv: int, config: TransportConfig):
        self.conv = conv
        self.mtu = config.mtu
        self.mss = config.mtu - HEADER_SIZE
        self.stream = config.stream

        self.snd_wnd = config.snd_wnd
        self.rcv_wnd = config.rcv_wnd
        self.rmt_wnd = config.rcv_wnd

        profile = config.nodelay
        self.nodelay = profile.nodelay
        self.interval = profile.interval
        self.fastresend = profile.resend
        self.nocwnd = profile.no_congestion_control
        self.dead_link = config.dead_link

        self.rx_srtt = 0
        self.rx_rttval = 0
        self.rx_rto = RTO_DEFAULT
        self.rx_minrto = RTO_NODELAY if self.nodelay else RTO_MIN

        self.snd_una = 0
        self.snd_nxt = 0
        self.rcv_nxt = 0

        self.cwnd = 1
        self.incr = 0
        self.ssthresh = THRESH_INIT

        self.probe = 0
        self.ts_probe = 0
        self.probe_wait = 0

        self.current = 0
        self.dead = False

        self.snd_queue: deque[Segment] = deque()
        self.snd_buf: deque[Segment] = deque()
        self.rcv_buf: dict[int, Segment] = {}
        self.rcv_queue: deque[Segment] = deque()
        self.acklist: list[tuple[int, int]] = []

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def waitsnd(self) -> int:
        """Segments queued or in flight."""
        return len(self.snd_queue) + len(self.snd_buf)

    @property
    def idle(self) -> bool:
        """True once everything sent so far has been acknowledged."""
        return not self.snd_queue and not self.snd_buf

    # -------------------------------------------------------------------------
    # Send path
    # -------------------------------------------------------------------------

    def send(self, data: bytes) -> None:
        """Queue payload, splitting it into segments of at most ``mss`` bytes."""
        if not data:
            return

        if self.stream and self.snd_queue:
            last = self.snd_queue[-1]
            if last.cmd == CMD_PUSH and len(last.data) < self.mss:
                room = self.mss - len(last.data)
                last.data += data[:room]
                data = data[room:]

        for start in range(0, len(data), self.mss):
            chunk = data[start : start + self.mss]
            self.snd_queue.append(Segment(conv=self.conv, cmd=CMD_PUSH, data=chunk))

    def send_fin(self) -> None:
        """Queue the end-of-stream marker behind all pending data."""
        self.snd_queue.append(Segment(conv=self.conv, cmd=CMD_FIN))

    # -------------------------------------------------------------------------
    # Receive path
    # -------------------------------------------------------------------------

    def input(self, datagram: bytes) -> None:
        """
        Process one received datagram.

        Raises:
            ProtocolError: On malformed segments or a foreign conversation id.
        """
        prev_una = self.snd_una
        maxack: int | None = None

        for seg in iter_segments(datagram):
            if seg.conv != self.conv:
                raise ProtocolError(
                    f"Conversation mismatch: got {seg.conv}, expected {self.conv}"
                )

            self.rmt_wnd = seg.wnd
            self._parse_una(seg.una)
            self._shrink_buf()

            if seg.cmd == CMD_ACK:
                rtt = self.current - seg.ts
                if rtt >= 0:
                    self._update_ack(rtt)
                self._parse_ack(seg.sn)
                self._shrink_buf()
                if maxack is None or seg.sn > maxack:
                    maxack = seg.sn

            elif seg.cmd in SEQUENCED_COMMANDS:
                if seg.sn < self.rcv_nxt + self.rcv_wnd:
                    self.acklist.append((seg.sn, seg.ts))
                    if seg.sn >= self.rcv_nxt:
                        self.rcv_buf.setdefault(seg.sn, seg)
                        self._move_to_queue()

            elif seg.cmd == CMD_WASK:
                self.probe |= ASK_TELL

            elif seg.cmd == CMD_WINS:
                pass

            else:
                raise ProtocolError(f"Unexpected command {seg.cmd} in session")

        if maxack is not None:
            self._parse_fastack(maxack)

        if self.snd_una > prev_una and not self.nocwnd:
            self._grow_cwnd()

    def recv(self, max_segments: int | None = None) -> list[Segment]:
        """
        Take in-order segments (data and FIN) received so far.

        Args:
            max_segments: Take at most this many; the rest stays queued and
                keeps counting against the advertised receive window.
        """
        recover = len(self.rcv_queue) >= self.rcv_wnd
        count = len(self.rcv_queue) if max_segments is None else max_segments
        segments = []
        while self.rcv_queue and len(segments) < count:
            segments.append(self.rcv_queue.popleft())
        self._move_to_queue()
        if recover and len(self.rcv_queue) < self.rcv_wnd:
            self.probe |= ASK_TELL
        return segments

    def keepalive(self) -> None:
        """Send a window update on the next flush even if nothing else is due."""
        self.probe |= ASK_TELL

    def _move_to_queue(self) -> None:
        while self.rcv_nxt in self.rcv_buf and len(self.rcv_queue) < self.rcv_wnd:
            self.rcv_queue.append(self.rcv_buf.pop(self.rcv_nxt))
            self.rcv_nxt += 1

    # -------------------------------------------------------------------------
    # Acknowledgement handling
    # -------------------------------------------------------------------------

    def _parse_una(self, una: int) -> None:
        while self.snd_buf and self.snd_buf[0].sn < una:
            self.snd_buf.popleft()

    def _shrink_buf(self) -> None:
        self.snd_una = self.snd_buf[0].sn if self.snd_buf else self.snd_nxt

    def _parse_ack(self, sn: int) -> None:
        if sn < self.snd_una or sn >= self.snd_nxt:
            return
        for seg in self.snd_buf:
            if seg.sn == sn:
                self.snd_buf.remove(seg)
                break
            if seg.sn > sn:
                break

    def _parse_fastack(self, sn: int) -> None:
        if sn < self.snd_una or sn >= self.snd_nxt:
            return
        for seg in self.snd_buf:
            if seg.sn >= sn:
                break
            seg.fastack += 1

    def _update_ack(self, rtt: int) -> None:
        if self.rx_srtt == 0:
            self.rx_srtt = rtt
            self.rx_rttval = rtt // 2
        else:
            delta = abs(rtt - self.rx_srtt)
            self.rx_rttval = (3 * self.rx_rttval + delta) // 4
            self.rx_srtt = max((7 * self.rx_srtt + rtt) // 8, 1)
        rto = self.rx_srtt + max(self.interval, 4 * self.rx_rttval)
        self.rx_rto = min(max(self.rx_minrto, rto), RTO_MAX)

    def _grow_cwnd(self) -> None:
        if self.cwnd >= self.rmt_wnd:
            return
        mss = self.mss
        if self.cwnd < self.ssthresh:
            self.cwnd += 1
            self.incr += mss
        else:
            self.incr = max(self.incr, mss)
            self.incr += (mss * mss) // self.incr + mss // 16
            if (self.cwnd + 1) * mss <= self.incr:
                self.cwnd = (self.incr + mss - 1) // mss
        if self.cwnd > self.rmt_wnd:
            self.cwnd = self.rmt_wnd
            self.incr = self.rmt_wnd * mss

    # -------------------------------------------------------------------------
    # Output
    # -------------------------------------------------------------------------

    def _wnd_unused(self) -> int:
        return max(self.rcv_wnd - len(self.rcv_queue), 0)

    def _append(self, out: list[bytes], buffer: bytearray, raw: bytes) -> None:
        if buffer and len(buffer) + len(raw) > self.mtu:
            out.append(bytes(buffer))
            buffer.clear()
        buffer += raw

    def _control(self, cmd: int, wnd: int, ts: int = 0, sn: int = 0) -> bytes:
        return Segment(
            conv=self.conv, cmd=cmd, wnd=wnd, ts=ts, sn=sn, una=self.rcv_nxt
        ).encode()

    def flush(self) -> list[bytes]:
        """
        Produce the datagrams due at ``current``.

        Sends pending acknowledgements and window probes, admits queued
        segments into the send window and (re)transmits in-flight segments
        whose timer expired or that were skipped by enough later acks.
        Marks the block ``dead`` when a segment hit ``dead_link``
        transmissions.
        """
        current = self.current
        wnd = self._wnd_unused()
        out: list[bytes] = []
        buffer = bytearray()

        for sn, ts in self.acklist:
            self._append(out, buffer, self._control(CMD_ACK, wnd, ts=ts, sn=sn))
        self.acklist.clear()

        if self.rmt_wnd == 0:
            if self.probe_wait == 0:
                self.probe_wait = PROBE_INIT
                self.ts_probe = current + self.probe_wait
            elif current >= self.ts_probe:
                self.probe_wait = max(self.probe_wait, PROBE_INIT)
                self.probe_wait = min(self.probe_wait + self.probe_wait // 2, PROBE_LIMIT)
                self.ts_probe = current + self.probe_wait
                self.probe |= ASK_SEND
        else:
            self.ts_probe = 0
            self.probe_wait = 0

        if self.probe & ASK_SEND:
            self._append(out, buffer, self._control(CMD_WASK, wnd))
        if self.probe & ASK_TELL:
            self._append(out, buffer, self._control(CMD_WINS, wnd))
        self.probe = 0

        cwnd = min(self.snd_wnd, self.rmt_wnd)
        if not self.nocwnd:
            cwnd = min(self.cwnd, cwnd)

        while self.snd_queue and self.snd_nxt < self.snd_una + cwnd:
            seg = self.snd_queue.popleft()
            seg.sn = self.snd_nxt
            seg.xmit = 0
            seg.fastack = 0
            self.snd_nxt += 1
            self.snd_buf.append(seg)

        resent = self.fastresend if self.fastresend > 0 else NO_FASTRESEND
        rtomin = 0 if self.nodelay else self.rx_rto >> 3
        lost = False
        change = False

        for seg in self.snd_buf:
            needsend = False
            if seg.xmit == 0:
                needsend = True
                seg.rto = self.rx_rto
                seg.resendts = current + seg.rto + rtomin
            elif current >= seg.resendts:
                needsend = True
                if self.nodelay:
                    seg.rto += seg.rto // 2
                else:
                    seg.rto += max(seg.rto, self.rx_rto)
                seg.rto = min(seg.rto, RTO_MAX)
                seg.resendts = current + seg.rto
                lost = True
            elif seg.fastack >= resent:
                needsend = True
                seg.fastack = 0
                seg.resendts = current + seg.rto
                change = True

            if needsend:
                seg.xmit += 1
                seg.ts = current
                seg.wnd = wnd
                seg.una = self.rcv_nxt
                self._append(out, buffer, seg.encode())
                if seg.xmit >= self.dead_link:
                    self.dead = True

        if buffer:
            out.append(bytes(buffer))

        if change:
            inflight = self.snd_nxt - self.snd_una
            self.ssthresh = max(inflight // 2, THRESH_MIN)
            self.cwnd = self.ssthresh + resent
            self.incr = self.cwnd * self.mss
        if lost:
            self.ssthresh = max(self.cwnd // 2, THRESH_MIN)
            self.cwnd = 1
            self.incr = self.mss
        if self.cwnd < 1:
            self.cwnd = 1
            self.incr = self.mss

        return out
