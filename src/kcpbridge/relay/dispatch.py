"""
Per-session task dispatch and outcome reporting.

Each accepted pairing runs in its own asyncio task. The dispatcher keeps a
reference to every in-flight task so none of them is silently lost, reports
every outcome exactly once and cancels what is left on shutdown.
"""

import asyncio
from collections.abc import Callable, Coroutine

from kcpbridge.models.enums import FailureKind
from kcpbridge.relay.bridge import SessionBridge, SessionOutcome
from kcpbridge.utils.logger import format_traceback, get_logger

logger = get_logger(__name__)

OutcomeSink = Callable[[SessionOutcome], None]


class SessionDispatcher:
    """Tracks session tasks and routes their outcomes to the log and a sink."""

    def __init__(
        self,
        on_outcome: OutcomeSink | None = None,
        buffer_size: int = 4096,
        shutdown_timeout: float = 1.0,
    ):
        """
        Initialize the dispatcher.

        Args:
            on_outcome: Optional callable invoked with every outcome.
            buffer_size: Read size handed to each bridge.
            shutdown_timeout: Close timeout handed to each bridge.
        """
        self.on_outcome = on_outcome
        self.buffer_size = buffer_size
        self.shutdown_timeout = shutdown_timeout
        self._tasks: set[asyncio.Task] = set()

    @property
    def active(self) -> int:
        """Number of sessions still running."""
        return len(self._tasks)

    def spawn(self, coro: Coroutine, session_id: str) -> asyncio.Task:
        """Run a session coroutine in its own task."""
        task = asyncio.create_task(coro, name=f"session-{session_id}")
        self.track(task)
        return task

    def track(self, task: asyncio.Task) -> None:
        """Keep a reference to a task created elsewhere (e.g. by start_server)."""
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def bridge(
        self,
        session_id: str,
        stream_reader: asyncio.StreamReader,
        stream_writer,
        tunnel_reader: asyncio.StreamReader,
        tunnel_writer,
    ) -> SessionOutcome:
        """Run a session bridge and report its outcome."""
        bridge = SessionBridge(
            session_id,
            stream_reader,
            stream_writer,
            tunnel_reader,
            tunnel_writer,
            buffer_size=self.buffer_size,
            shutdown_timeout=self.shutdown_timeout,
        )
        try:
            return await bridge.run()
        finally:
            if bridge.outcome is not None:
                self.report(bridge.outcome)

    def report(self, outcome: SessionOutcome) -> None:
        """Log an outcome and hand it to the sink."""
        log_prefix = f"[Session {outcome.session_id}]"
        if outcome.ok:
            logger.info(f"{log_prefix} {outcome.describe()}")
        elif outcome.failure == FailureKind.CANCELLED:
            logger.info(f"{log_prefix} {outcome.describe()}")
        else:
            logger.warning(f"{log_prefix} {outcome.describe()}")

        if self.on_outcome is None:
            return
        try:
            self.on_outcome(outcome)
        except Exception as e:
            logger.error(
                f"{log_prefix} Outcome sink raised: {e}\n{format_traceback(e)}"
            )

    async def shutdown(self) -> None:
        """Cancel all in-flight sessions and wait for them to finish."""
        tasks = [t for t in self._tasks if t is not asyncio.current_task()]
        if not tasks:
            return
        logger.info(f"Cancelling {len(tasks)} active session(s).")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
