"""In-memory stand-ins for connection halves used by the bridge tests."""

import asyncio
import time


class FakeWriter:
    """Records everything written to it and every shutdown call."""

    def __init__(
        self,
        write_error: BaseException | None = None,
        eof_error: BaseException | None = None,
    ):
        self.buffer = bytearray()
        self.eof_calls = 0
        self.close_calls = 0
        self.write_error = write_error
        self.eof_error = eof_error
        self.drain_gate: asyncio.Event | None = None
        self._closing = False

    def write(self, data: bytes) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.buffer += data

    async def drain(self) -> None:
        if self.drain_gate is not None:
            await self.drain_gate.wait()

    def can_write_eof(self) -> bool:
        return True

    def write_eof(self) -> None:
        self.eof_calls += 1
        if self.eof_error is not None:
            raise self.eof_error

    def is_closing(self) -> bool:
        return self._closing

    def close(self) -> None:
        self.close_calls += 1
        self._closing = True

    async def wait_closed(self) -> None:
        return None


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` until it is truthy or fail after ``timeout`` seconds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)
