"""
Session bridge.

Joins one TCP stream half with one tunnel session half and relays bytes in
both directions until the first direction reaches end-of-stream or fails.
Afterwards both halves are shut down (end-of-output, then close) and a single
``SessionOutcome`` is recorded.
"""

import asyncio
import time
from dataclasses import dataclass

from kcpbridge.models.enums import (
    Direction,
    FailureKind,
    OutcomeStatus,
    SessionState,
)
from kcpbridge.transport.exceptions import TunnelError
from kcpbridge.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_BUFFER_SIZE = 4096
DEFAULT_SHUTDOWN_TIMEOUT = 1.0

# Allowed lifecycle transitions
_TRANSITIONS = {
    SessionState.PAIRED: SessionState.RELAYING,
    SessionState.RELAYING: SessionState.SHUTTING_DOWN,
    SessionState.SHUTTING_DOWN: SessionState.CLOSED,
}


# =============================================================================
# Outcome
# =============================================================================


@dataclass
class SessionOutcome:
    """
    Terminal report of one session.

    Attributes:
        session_id: Correlation id of the session.
        status: SUCCESS or FAILURE.
        bytes_to_tunnel: Bytes relayed stream -> tunnel.
        bytes_to_stream: Bytes relayed tunnel -> stream.
        failure: Classification of the failure, None on success.
        direction: Direction the failure happened on, if any.
        error: The underlying exception, None on success.
        duration: Seconds between pairing and outcome.
    """

    session_id: str
    status: OutcomeStatus
    bytes_to_tunnel: int = 0
    bytes_to_stream: int = 0
    failure: FailureKind | None = None
    direction: Direction | None = None
    error: BaseException | None = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    @classmethod
    def dial_failure(cls, session_id: str, error: BaseException) -> "SessionOutcome":
        """Outcome of a session whose outbound half never came up."""
        return cls(
            session_id=session_id,
            status=OutcomeStatus.FAILURE,
            failure=FailureKind.DIAL,
            error=error,
        )

    def describe(self) -> str:
        """One-line summary for logs."""
        counters = (
            f"{Direction.STREAM_TO_TUNNEL.value}={self.bytes_to_tunnel}B "
            f"{Direction.TUNNEL_TO_STREAM.value}={self.bytes_to_stream}B"
        )
        if self.ok:
            return f"End of life after {self.duration:.2f}s, {counters}"
        where = f" on {self.direction.value}" if self.direction else ""
        return (
            f"Failed ({self.failure.value}{where}): "
            f"{type(self.error).__name__}: {self.error}; {counters}"
        )


@dataclass
class _PumpResult:
    direction: Direction | None
    failure: FailureKind | None = None
    error: BaseException | None = None


# =============================================================================
# Bridge
# =============================================================================


class SessionBridge:
    """
    Relays one stream half against one tunnel half.

    The bridge exclusively owns both halves from construction on. ``run`` may
    be awaited once; it always shuts down both halves and always leaves a
    ``SessionOutcome`` in ``outcome``, also when the task is cancelled.
    """

    def __init__(
        self,
        session_id: str,
        stream_reader: asyncio.StreamReader,
        stream_writer,
        tunnel_reader: asyncio.StreamReader,
        tunnel_writer,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
    ):
        """
        Initialize the bridge.

        Args:
            session_id: Correlation id used in logs and the outcome.
            stream_reader: Read side of the TCP connection.
            stream_writer: Write side of the TCP connection.
            tunnel_reader: Read side of the tunnel session.
            tunnel_writer: Write side of the tunnel session.
            buffer_size: Maximum bytes per read.
            shutdown_timeout: Seconds to wait for each half to finish closing.
        """
        self.session_id = session_id
        self.buffer_size = buffer_size
        self.shutdown_timeout = shutdown_timeout
        self.outcome: SessionOutcome | None = None

        self._stream_reader = stream_reader
        self._stream_writer = stream_writer
        self._tunnel_reader = tunnel_reader
        self._tunnel_writer = tunnel_writer

        self._state = SessionState.PAIRED
        self._history = [SessionState.PAIRED]
        self._counters = {direction: 0 for direction in Direction}
        self._halves_shut = False
        self._started_at = time.monotonic()
        self._log_prefix = f"[Session {session_id}]"

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def history(self) -> list[SessionState]:
        """States visited so far, in order."""
        return list(self._history)

    def bytes_relayed(self, direction: Direction) -> int:
        return self._counters[direction]

    def _transition(self, new_state: SessionState) -> None:
        if _TRANSITIONS.get(self._state) != new_state:
            raise RuntimeError(
                f"{self._log_prefix} Illegal state transition "
                f"{self._state.value} -> {new_state.value}"
            )
        logger.debug(f"{self._log_prefix} {self._state.value} -> {new_state.value}")
        self._state = new_state
        self._history.append(new_state)

    # -------------------------------------------------------------------------
    # Relay
    # -------------------------------------------------------------------------

    async def _pump(
        self,
        direction: Direction,
        reader: asyncio.StreamReader,
        writer,
    ) -> _PumpResult:
        """Copy reader into writer until EOF or error."""
        while True:
            try:
                data = await reader.read(self.buffer_size)
            except (OSError, TunnelError, asyncio.IncompleteReadError) as e:
                return _PumpResult(direction, FailureKind.READ, e)
            except Exception as e:
                logger.exception(
                    f"{self._log_prefix} Unexpected error reading {direction.value}: {e}"
                )
                return _PumpResult(direction, FailureKind.READ, e)
            if not data:
                logger.debug(f"{self._log_prefix} {direction.value}: end of stream.")
                return _PumpResult(direction)
            try:
                writer.write(data)
                await writer.drain()
            except (OSError, TunnelError, RuntimeError) as e:
                return _PumpResult(direction, FailureKind.WRITE, e)
            except Exception as e:
                logger.exception(
                    f"{self._log_prefix} Unexpected error writing {direction.value}: {e}"
                )
                return _PumpResult(direction, FailureKind.WRITE, e)
            self._counters[direction] += len(data)

    async def run(self) -> SessionOutcome:
        """
        Relay until the first direction terminates, then shut both halves down.

        Returns:
            The session outcome (also stored in ``outcome``).

        Raises:
            RuntimeError: If the bridge already ran.
            asyncio.CancelledError: If the surrounding task is cancelled; the
                halves are shut down and a CANCELLED outcome is recorded first.
        """
        self._transition(SessionState.RELAYING)
        logger.debug(f"{self._log_prefix} Starting bidirectional forwarding.")

        pumps = [
            asyncio.create_task(
                self._pump(
                    Direction.STREAM_TO_TUNNEL,
                    self._stream_reader,
                    self._tunnel_writer,
                )
            ),
            asyncio.create_task(
                self._pump(
                    Direction.TUNNEL_TO_STREAM,
                    self._tunnel_reader,
                    self._stream_writer,
                )
            ),
        ]

        result = _PumpResult(
            None, FailureKind.CANCELLED, asyncio.CancelledError("Session cancelled")
        )
        cancelled: asyncio.CancelledError | None = None
        try:
            try:
                done, _ = await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
                result = self._pick_result([p.result() for p in pumps if p in done])
            except asyncio.CancelledError as e:
                cancelled = e

            await self._stop_pumps(pumps)
            self._transition(SessionState.SHUTTING_DOWN)
            await self._shutdown_halves()
        finally:
            if self._state == SessionState.RELAYING:
                self._transition(SessionState.SHUTTING_DOWN)
            if not self._halves_shut:
                self._close_halves_now()
            self._finish(result)

        if cancelled is not None:
            raise cancelled
        return self.outcome

    @staticmethod
    def _pick_result(results: list[_PumpResult]) -> _PumpResult:
        # An error beats end-of-stream; ties resolve stream->tunnel first.
        results.sort(key=lambda r: list(Direction).index(r.direction))
        for result in results:
            if result.failure is not None:
                return result
        return results[0]

    @staticmethod
    async def _stop_pumps(pumps: list[asyncio.Task]) -> None:
        for pump in pumps:
            pump.cancel()
        await asyncio.gather(*pumps, return_exceptions=True)

    def _finish(self, result: _PumpResult) -> SessionOutcome:
        failed = result.failure is not None
        self.outcome = SessionOutcome(
            session_id=self.session_id,
            status=OutcomeStatus.FAILURE if failed else OutcomeStatus.SUCCESS,
            bytes_to_tunnel=self.bytes_relayed(Direction.STREAM_TO_TUNNEL),
            bytes_to_stream=self.bytes_relayed(Direction.TUNNEL_TO_STREAM),
            failure=result.failure,
            direction=result.direction if failed else None,
            error=result.error,
            duration=time.monotonic() - self._started_at,
        )
        self._transition(SessionState.CLOSED)
        return self.outcome

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def _shutdown_halves(self) -> None:
        await asyncio.gather(
            self._shutdown_half("stream", self._stream_writer),
            self._shutdown_half("tunnel", self._tunnel_writer),
        )
        self._halves_shut = True

    def _close_halves_now(self) -> None:
        # Interrupted before the orderly shutdown completed.
        for writer in (self._stream_writer, self._tunnel_writer):
            if not writer.is_closing():
                writer.close()
        self._halves_shut = True

    async def _shutdown_half(self, name: str, writer) -> None:
        """Signal end-of-output, then close. Failures are logged only."""
        try:
            if writer.can_write_eof() and not writer.is_closing():
                writer.write_eof()
        except (OSError, TunnelError, RuntimeError) as e:
            logger.debug(f"{self._log_prefix} Shutdown of {name} half failed: {e}")

        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.debug(
                f"{self._log_prefix} {name} half did not close within "
                f"{self.shutdown_timeout}s."
            )
        except (OSError, TunnelError) as e:
            logger.debug(f"{self._log_prefix} Closing {name} half failed: {e}")
