"""Tests for the session bridge and the dispatcher."""

import asyncio

import pytest

from kcpbridge.models.enums import (
    Direction,
    FailureKind,
    OutcomeStatus,
    SessionState,
)
from kcpbridge.relay.bridge import SessionBridge, SessionOutcome
from kcpbridge.relay.dispatch import SessionDispatcher
from kcpbridge.transport.exceptions import TunnelTimeoutError

from .helpers import FakeWriter, wait_until


def make_bridge(session_id="s1", buffer_size=4096, **writers):
    stream_reader = asyncio.StreamReader()
    tunnel_reader = asyncio.StreamReader()
    stream_writer = writers.get("stream_writer") or FakeWriter()
    tunnel_writer = writers.get("tunnel_writer") or FakeWriter()
    bridge = SessionBridge(
        session_id,
        stream_reader,
        stream_writer,
        tunnel_reader,
        tunnel_writer,
        buffer_size=buffer_size,
        shutdown_timeout=0.5,
    )
    return bridge, stream_reader, stream_writer, tunnel_reader, tunnel_writer


def assert_shut_down_once(*writers: FakeWriter):
    for writer in writers:
        assert writer.eof_calls == 1
        assert writer.close_calls == 1


class TestRelay:
    """Normal relaying and end-of-stream handling."""

    @pytest.mark.asyncio
    async def test_relays_both_directions(self):
        bridge, sr, sw, tr, tw = make_bridge()
        sr.feed_data(b"hello")
        tr.feed_data(b"world!")

        task = asyncio.create_task(bridge.run())
        await wait_until(lambda: tw.buffer == b"hello" and sw.buffer == b"world!")
        tr.feed_eof()
        outcome = await asyncio.wait_for(task, 2.0)

        assert outcome.status == OutcomeStatus.SUCCESS
        assert outcome.ok
        assert outcome.bytes_to_tunnel == 5
        assert outcome.bytes_to_stream == 6
        assert outcome.failure is None
        assert outcome.direction is None
        assert bridge.outcome is outcome

    @pytest.mark.asyncio
    async def test_lifecycle_history(self):
        bridge, sr, *_ = make_bridge()
        assert bridge.state == SessionState.PAIRED

        sr.feed_eof()
        await bridge.run()

        assert bridge.history == [
            SessionState.PAIRED,
            SessionState.RELAYING,
            SessionState.SHUTTING_DOWN,
            SessionState.CLOSED,
        ]

    @pytest.mark.asyncio
    async def test_chunked_relay_preserves_order(self):
        """Reads smaller than the data still reproduce the exact sequence."""
        bridge, sr, sw, tr, tw = make_bridge(buffer_size=7)
        data = bytes(range(256)) * 40
        sr.feed_data(data)
        sr.feed_eof()

        outcome = await asyncio.wait_for(bridge.run(), 2.0)

        assert bytes(tw.buffer) == data
        assert outcome.bytes_to_tunnel == len(data)

    @pytest.mark.asyncio
    async def test_first_eof_terminates_both_directions(self):
        """EOF on the stream side shuts down the session, tunnel data pending or not."""
        bridge, sr, sw, tr, tw = make_bridge()
        sr.feed_eof()

        outcome = await asyncio.wait_for(bridge.run(), 2.0)

        assert outcome.ok
        assert not tr.at_eof()
        assert_shut_down_once(sw, tw)

    @pytest.mark.asyncio
    async def test_shutdown_while_other_direction_mid_write(self):
        """A direction blocked in drain() is cancelled; each half is shut exactly once."""
        sw = FakeWriter()
        sw.drain_gate = asyncio.Event()
        bridge, sr, sw, tr, tw = make_bridge(stream_writer=sw)
        tr.feed_data(b"stuck in drain")

        task = asyncio.create_task(bridge.run())
        await wait_until(lambda: sw.buffer == b"stuck in drain")
        sr.feed_eof()
        outcome = await asyncio.wait_for(task, 2.0)

        assert outcome.ok
        # The blocked write never completed its drain
        assert outcome.bytes_to_stream == 0
        assert_shut_down_once(sw, tw)

    @pytest.mark.asyncio
    async def test_shutdown_errors_do_not_change_outcome(self):
        sw = FakeWriter(eof_error=OSError("already reset"))
        tw = FakeWriter(eof_error=BrokenPipeError())
        bridge, sr, *_ = make_bridge(stream_writer=sw, tunnel_writer=tw)
        sr.feed_eof()

        outcome = await asyncio.wait_for(bridge.run(), 2.0)

        assert outcome.ok
        assert sw.close_calls == 1
        assert tw.close_calls == 1

    @pytest.mark.asyncio
    async def test_runs_only_once(self):
        bridge, sr, *_ = make_bridge()
        sr.feed_eof()
        await bridge.run()

        with pytest.raises(RuntimeError):
            await bridge.run()


class TestFailures:
    """Failure classification and exactly-once outcomes."""

    @pytest.mark.asyncio
    async def test_read_error(self):
        bridge, sr, sw, tr, tw = make_bridge()
        error = ConnectionResetError("peer reset")
        sr.set_exception(error)

        outcome = await asyncio.wait_for(bridge.run(), 2.0)

        assert outcome.status == OutcomeStatus.FAILURE
        assert outcome.failure == FailureKind.READ
        assert outcome.direction == Direction.STREAM_TO_TUNNEL
        assert outcome.error is error
        assert_shut_down_once(sw, tw)

    @pytest.mark.asyncio
    async def test_tunnel_read_error(self):
        bridge, sr, sw, tr, tw = make_bridge()
        tr.set_exception(TunnelTimeoutError("peer stopped responding"))

        outcome = await asyncio.wait_for(bridge.run(), 2.0)

        assert outcome.failure == FailureKind.READ
        assert outcome.direction == Direction.TUNNEL_TO_STREAM

    @pytest.mark.asyncio
    async def test_write_error(self):
        tw = FakeWriter(write_error=BrokenPipeError("tunnel gone"))
        bridge, sr, sw, tr, _ = make_bridge(tunnel_writer=tw)
        sr.feed_data(b"payload")

        outcome = await asyncio.wait_for(bridge.run(), 2.0)

        assert outcome.failure == FailureKind.WRITE
        assert outcome.direction == Direction.STREAM_TO_TUNNEL
        assert isinstance(outcome.error, BrokenPipeError)
        assert outcome.bytes_to_tunnel == 0

    @pytest.mark.asyncio
    async def test_error_wins_over_eof(self):
        bridge, sr, sw, tr, tw = make_bridge()
        sr.feed_eof()
        tr.set_exception(ConnectionResetError())

        outcome = await asyncio.wait_for(bridge.run(), 2.0)

        assert outcome.failure == FailureKind.READ
        assert outcome.direction == Direction.TUNNEL_TO_STREAM

    @pytest.mark.asyncio
    async def test_both_directions_fail_single_outcome(self):
        outcomes = []
        dispatcher = SessionDispatcher(outcomes.append, shutdown_timeout=0.5)
        sr = asyncio.StreamReader()
        tr = asyncio.StreamReader()
        sw, tw = FakeWriter(), FakeWriter()
        sr.set_exception(ConnectionResetError("stream"))
        tr.set_exception(ConnectionResetError("tunnel"))

        outcome = await dispatcher.bridge("both", sr, sw, tr, tw)

        assert outcomes == [outcome]
        assert outcome.failure == FailureKind.READ
        assert_shut_down_once(sw, tw)

    @pytest.mark.asyncio
    async def test_unexpected_read_exception_is_classified(self):
        """Any exception from a read ends the session as a READ failure."""
        outcomes = []
        dispatcher = SessionDispatcher(outcomes.append, shutdown_timeout=0.5)
        sr = asyncio.StreamReader()
        tr = asyncio.StreamReader()
        sw, tw = FakeWriter(), FakeWriter()
        error = ValueError("decoder broke")
        sr.set_exception(error)

        outcome = await asyncio.wait_for(
            dispatcher.bridge("odd-read", sr, sw, tr, tw), 2.0
        )

        assert outcomes == [outcome]
        assert outcome.failure == FailureKind.READ
        assert outcome.direction == Direction.STREAM_TO_TUNNEL
        assert outcome.error is error
        assert_shut_down_once(sw, tw)

    @pytest.mark.asyncio
    async def test_unexpected_write_exception_is_classified(self):
        error = ValueError("writer broke")
        tw = FakeWriter(write_error=error)
        bridge, sr, sw, tr, _ = make_bridge(tunnel_writer=tw)
        sr.feed_data(b"payload")

        outcome = await asyncio.wait_for(bridge.run(), 2.0)

        assert outcome.failure == FailureKind.WRITE
        assert outcome.direction == Direction.STREAM_TO_TUNNEL
        assert outcome.error is error
        assert bridge.state == SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_cancellation_records_outcome(self):
        bridge, sr, sw, tr, tw = make_bridge()
        task = asyncio.create_task(bridge.run())
        await wait_until(lambda: bridge.state == SessionState.RELAYING)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert bridge.state == SessionState.CLOSED
        assert bridge.outcome.failure == FailureKind.CANCELLED
        assert bridge.outcome.status == OutcomeStatus.FAILURE
        assert sw.close_calls == 1
        assert tw.close_calls == 1


class TestDispatcher:
    """Outcome reporting and task tracking."""

    @pytest.mark.asyncio
    async def test_sink_errors_are_contained(self):
        def broken_sink(outcome):
            raise ValueError("sink exploded")

        dispatcher = SessionDispatcher(broken_sink)
        dispatcher.report(SessionOutcome.dial_failure("x", ConnectionRefusedError()))

    @pytest.mark.asyncio
    async def test_dial_failure_outcome(self):
        outcome = SessionOutcome.dial_failure("abc", ConnectionRefusedError("nope"))

        assert outcome.status == OutcomeStatus.FAILURE
        assert outcome.failure == FailureKind.DIAL
        assert outcome.bytes_to_tunnel == outcome.bytes_to_stream == 0
        assert "dial" in outcome.describe()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_sessions(self):
        outcomes = []
        dispatcher = SessionDispatcher(outcomes.append, shutdown_timeout=0.5)
        sw, tw = FakeWriter(), FakeWriter()
        dispatcher.spawn(
            dispatcher.bridge(
                "idle", asyncio.StreamReader(), sw, asyncio.StreamReader(), tw
            ),
            "idle",
        )
        await wait_until(lambda: dispatcher.active == 1)
        await asyncio.sleep(0.01)

        await dispatcher.shutdown()

        assert dispatcher.active == 0
        assert len(outcomes) == 1
        assert outcomes[0].failure == FailureKind.CANCELLED

    @pytest.mark.asyncio
    async def test_concurrent_sessions_are_isolated(self):
        """One failing session among a hundred leaves the others untouched."""
        outcomes = []
        dispatcher = SessionDispatcher(outcomes.append, shutdown_timeout=0.5)
        failing = 42

        async def session(i):
            sr, tr = asyncio.StreamReader(), asyncio.StreamReader()
            sw, tw = FakeWriter(), FakeWriter()
            up = f"up-{i}|".encode() * 100
            down = f"down-{i}|".encode() * 50
            sr.feed_data(up)
            if i == failing:
                tr.set_exception(ConnectionResetError("boom"))
            else:
                tr.feed_data(down)

            task = asyncio.create_task(dispatcher.bridge(str(i), sr, sw, tr, tw))
            if i != failing:
                await wait_until(
                    lambda: len(tw.buffer) == len(up) and len(sw.buffer) == len(down)
                )
                sr.feed_eof()
            outcome = await asyncio.wait_for(task, 5.0)
            if i != failing:
                assert bytes(tw.buffer) == up
                assert bytes(sw.buffer) == down
            return outcome

        results = await asyncio.gather(*(session(i) for i in range(100)))

        assert len(outcomes) == 100
        assert len({o.session_id for o in outcomes}) == 100
        failed = [o for o in results if not o.ok]
        assert [o.session_id for o in failed] == [str(failing)]
        assert failed[0].failure == FailureKind.READ
        assert failed[0].direction == Direction.TUNNEL_TO_STREAM
