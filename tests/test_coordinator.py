"""Tests for the coordinator state machine and response correlation."""

import asyncio
import random

import pytest

from conftest import RED_RESULT, FakeTransport, start_transform
from windify.config import WindifyConfig
from windify.coordinator import CoordinatorState, TransformCoordinator
from windify.errors import TransformError, TransportNotReady
from windify.schemas import ErrorKind, MatchOptions
from windify.transports.background import BackgroundTransport
from windify.transports.remote import RemoteTransport


# ---------------------------------------------------------------------------
# Happy path and failures
# ---------------------------------------------------------------------------


class TestTransform:

    def test_starts_idle(self, coordinator):
        snapshot = coordinator.get_state()
        assert snapshot.state is CoordinatorState.IDLE
        assert snapshot.result is None
        assert snapshot.error is None

    @pytest.mark.asyncio
    async def test_matching_success_resolves(self, coordinator, transport):
        task = await start_transform(coordinator, ".a{color:red}", {"strict": False})

        assert coordinator.state is CoordinatorState.PROCESSING
        [request] = transport.sent
        assert request.css == ".a{color:red}"
        assert request.options == {"strict": False}
        assert coordinator.get_state().request == request

        transport.reply(request.id, RED_RESULT)

        assert await task == RED_RESULT
        snapshot = coordinator.get_state()
        assert snapshot.state is CoordinatorState.SUCCESS
        assert snapshot.result == RED_RESULT
        assert snapshot.error is None
        assert coordinator.pending_id is None

    @pytest.mark.asyncio
    async def test_options_passed_through_unmodified(self, coordinator, transport):
        options = MatchOptions(version="v4")
        task = await start_transform(coordinator, ".a{}", options)
        assert transport.sent[0].options is options
        transport.reply(transport.sent[0].id, {})
        await task

    @pytest.mark.asyncio
    async def test_matching_failure_rejects(self, coordinator, transport):
        task = await start_transform(coordinator)
        transport.reply_error(transport.sent[0].id, message="Unexpected token")

        with pytest.raises(TransformError) as exc_info:
            await task
        assert exc_info.value.kind is ErrorKind.TRANSPORT_FAILURE
        assert exc_info.value.info.message == "Unexpected token"

        snapshot = coordinator.get_state()
        assert snapshot.state is CoordinatorState.ERROR
        assert snapshot.error.kind is ErrorKind.TRANSPORT_FAILURE
        assert snapshot.result is None
        assert coordinator.pending_id is None

    @pytest.mark.asyncio
    async def test_new_transform_clears_previous_result(self, coordinator, transport):
        task = await start_transform(coordinator)
        transport.reply(transport.sent[0].id, RED_RESULT)
        await task

        second = await start_transform(coordinator)
        snapshot = coordinator.get_state()
        assert snapshot.state is CoordinatorState.PROCESSING
        assert snapshot.result is None
        assert snapshot.error is None
        transport.reply(transport.sent[1].id, {})
        await second

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, coordinator, transport):
        tasks = [await start_transform(coordinator) for _ in range(20)]
        ids = [r.id for r in transport.sent]
        assert len(set(ids)) == len(ids)
        coordinator.reset()
        await asyncio.gather(*tasks, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_dispatch_failure_surfaces_and_recovers(self, coordinator, transport):
        transport.fail_with = TransportNotReady("Worker is not initialized")

        with pytest.raises(TransformError) as exc_info:
            await coordinator.transform(".a{}", {})
        assert exc_info.value.kind is ErrorKind.NOT_READY
        assert coordinator.get_state().error.name == "WorkerNotInitialized"

        transport.fail_with = None
        task = await start_transform(coordinator)
        transport.reply(transport.sent[0].id, RED_RESULT)
        assert await task == RED_RESULT
        assert coordinator.state is CoordinatorState.SUCCESS

    @pytest.mark.asyncio
    async def test_unexpected_dispatch_error_raises_transform_error(self, coordinator, transport):
        transport.fail_with = TypeError("Object of type set is not JSON serializable")

        with pytest.raises(TransformError) as exc_info:
            await coordinator.transform(".a{}", {"theme": {1, 2}})

        info = exc_info.value.info
        assert info.kind is ErrorKind.TRANSPORT_FAILURE
        assert info.name == "TypeError"
        assert coordinator.state is CoordinatorState.ERROR
        assert coordinator.pending_id is None


# ---------------------------------------------------------------------------
# Stale responses and supersession
# ---------------------------------------------------------------------------


class TestCorrelation:

    @pytest.mark.asyncio
    async def test_unknown_id_is_ignored(self, coordinator, transport, snapshots):
        task = await start_transform(coordinator)
        published = len(snapshots)

        transport.reply("not-a-real-id", {"bogus": True})
        transport.reply(None, {"bogus": True})

        assert coordinator.state is CoordinatorState.PROCESSING
        assert len(snapshots) == published
        assert not task.done()

        transport.reply(transport.sent[0].id, RED_RESULT)
        assert await task == RED_RESULT

    @pytest.mark.asyncio
    async def test_second_transform_supersedes_first(self, coordinator, transport, snapshots):
        first = await start_transform(coordinator, ".a{color:red}")
        second = await start_transform(coordinator, ".b{color:blue}")
        first_id, second_id = (r.id for r in transport.sent)

        assert coordinator.pending_id == second_id
        assert transport.aborted == [first_id]
        with pytest.raises(TransformError) as exc_info:
            await first
        assert exc_info.value.kind is ErrorKind.CANCELLED

        # The first request's eventual answer, success or failure, is never observed.
        transport.reply(first_id, RED_RESULT)
        transport.reply_error(first_id)
        assert coordinator.state is CoordinatorState.PROCESSING

        transport.reply(second_id, {".b": {"classes": ["text-blue-500"]}})
        assert await second == {".b": {"classes": ["text-blue-500"]}}
        assert [s.state for s in snapshots] == [
            CoordinatorState.PROCESSING,
            CoordinatorState.PROCESSING,
            CoordinatorState.SUCCESS,
        ]

    @pytest.mark.asyncio
    async def test_only_latest_of_many_responses_takes_effect(self, coordinator, transport, snapshots):
        tasks = [await start_transform(coordinator, f".c{i}{{}}") for i in range(10)]
        ids = [r.id for r in transport.sent]

        arrival = list(enumerate(ids))
        random.Random(7).shuffle(arrival)
        for index, request_id in arrival:
            if index % 2:
                transport.reply(request_id, {"index": index})
            else:
                transport.reply_error(request_id, message=f"error {index}")

        terminal = [s for s in snapshots if s.state is not CoordinatorState.PROCESSING]
        assert len(terminal) == 1
        assert terminal[0].result == {"index": 9}

        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert results[-1] == {"index": 9}
        for outcome in results[:-1]:
            assert isinstance(outcome, TransformError)
            assert outcome.kind is ErrorKind.CANCELLED

    @pytest.mark.asyncio
    async def test_duplicate_response_applies_once(self, coordinator, transport, snapshots):
        task = await start_transform(coordinator)
        request_id = transport.sent[0].id
        transport.reply(request_id, RED_RESULT)
        transport.reply_error(request_id)

        assert await task == RED_RESULT
        assert coordinator.state is CoordinatorState.SUCCESS
        assert [s.state for s in snapshots][-1] is CoordinatorState.SUCCESS


# ---------------------------------------------------------------------------
# cancel / reset
# ---------------------------------------------------------------------------


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_while_processing(self, coordinator, transport):
        task = await start_transform(coordinator)
        request_id = transport.sent[0].id

        coordinator.cancel()

        # Synchronous: no await between cancel() and these checks.
        snapshot = coordinator.get_state()
        assert snapshot.state is CoordinatorState.ERROR
        assert snapshot.error.kind is ErrorKind.CANCELLED
        assert coordinator.pending_id is None
        assert transport.aborted == [request_id]

        with pytest.raises(TransformError) as exc_info:
            await task
        assert exc_info.value.kind is ErrorKind.CANCELLED

    @pytest.mark.asyncio
    async def test_late_success_after_cancel_is_dropped(self, coordinator, transport):
        task = await start_transform(coordinator)
        request_id = transport.sent[0].id
        coordinator.cancel()

        transport.reply(request_id, RED_RESULT)

        snapshot = coordinator.get_state()
        assert snapshot.state is CoordinatorState.ERROR
        assert snapshot.error.kind is ErrorKind.CANCELLED
        assert snapshot.result is None
        with pytest.raises(TransformError):
            await task

    def test_cancel_when_idle_is_noop(self, coordinator, transport, snapshots):
        before = coordinator.get_state()
        coordinator.cancel()
        coordinator.cancel()
        assert coordinator.get_state() is before
        assert snapshots == []
        assert transport.aborted == []

    @pytest.mark.asyncio
    async def test_cancel_after_success_is_noop(self, coordinator, transport):
        task = await start_transform(coordinator)
        transport.reply(transport.sent[0].id, RED_RESULT)
        await task

        before = coordinator.get_state()
        coordinator.cancel()
        assert coordinator.get_state() is before
        assert transport.aborted == []

    @pytest.mark.asyncio
    async def test_cancel_after_failure_is_noop(self, coordinator, transport):
        task = await start_transform(coordinator)
        transport.reply_error(transport.sent[0].id)
        with pytest.raises(TransformError):
            await task

        before = coordinator.get_state()
        coordinator.cancel()
        assert coordinator.get_state() is before

    @pytest.mark.asyncio
    async def test_caller_timeout_cancels_request(self, coordinator, transport):
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(coordinator.transform(".a{}", {}), timeout=0.05)

        request_id = transport.sent[0].id
        assert transport.aborted == [request_id]
        assert coordinator.get_state().error.kind is ErrorKind.CANCELLED
        assert coordinator.pending_id is None


class TestReset:

    def test_reset_from_idle(self, coordinator, snapshots):
        coordinator.reset()
        assert coordinator.state is CoordinatorState.IDLE
        assert snapshots == []

    @pytest.mark.asyncio
    async def test_reset_from_processing(self, coordinator, transport):
        task = await start_transform(coordinator)
        request_id = transport.sent[0].id

        coordinator.reset()

        snapshot = coordinator.get_state()
        assert snapshot.state is CoordinatorState.IDLE
        assert snapshot.result is None
        assert snapshot.error is None
        assert coordinator.pending_id is None
        with pytest.raises(TransformError) as exc_info:
            await task
        assert exc_info.value.kind is ErrorKind.CANCELLED

        transport.reply(request_id, RED_RESULT)
        assert coordinator.state is CoordinatorState.IDLE

    @pytest.mark.asyncio
    async def test_reset_from_success(self, coordinator, transport):
        task = await start_transform(coordinator)
        transport.reply(transport.sent[0].id, RED_RESULT)
        await task

        coordinator.reset()
        snapshot = coordinator.get_state()
        assert snapshot.state is CoordinatorState.IDLE
        assert snapshot.result is None

    @pytest.mark.asyncio
    async def test_reset_from_error(self, coordinator, transport):
        task = await start_transform(coordinator)
        coordinator.cancel()
        with pytest.raises(TransformError):
            await task

        coordinator.reset()
        coordinator.reset()
        snapshot = coordinator.get_state()
        assert snapshot.state is CoordinatorState.IDLE
        assert snapshot.error is None


# ---------------------------------------------------------------------------
# Listeners and lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_coordinator(self, coordinator, transport):
        def broken(snapshot):
            raise RuntimeError("listener bug")

        coordinator.subscribe(broken)
        task = await start_transform(coordinator)
        transport.reply(transport.sent[0].id, RED_RESULT)
        assert await task == RED_RESULT

    @pytest.mark.asyncio
    async def test_unsubscribe(self, coordinator, transport):
        seen = []
        unsubscribe = coordinator.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        task = await start_transform(coordinator)
        assert seen == []
        coordinator.reset()
        await asyncio.gather(task, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_aclose_rejects_pending_and_releases_transport(self, coordinator, transport):
        task = await start_transform(coordinator)
        await coordinator.aclose()

        assert transport.closed
        with pytest.raises(TransformError) as exc_info:
            await task
        assert exc_info.value.kind is ErrorKind.CANCELLED

    @pytest.mark.asyncio
    async def test_closed_coordinator_is_not_ready(self, transport):
        async with TransformCoordinator(transport) as coordinator:
            pass
        with pytest.raises(TransformError) as exc_info:
            await coordinator.transform(".a{}", {})
        assert exc_info.value.kind is ErrorKind.NOT_READY
        assert transport.sent == []


class TestFromConfig:

    def test_worker_kind(self):
        config = WindifyConfig(engine="fake_engine:evaluate")
        coordinator = TransformCoordinator.from_config(config)
        assert isinstance(coordinator.transport, BackgroundTransport)
        assert coordinator.transport.engine == "fake_engine:evaluate"

    def test_remote_kind(self):
        config = WindifyConfig(
            engine="fake_engine:evaluate",
            transport={"kind": "remote", "remote": {"base_url": "http://windify.test"}},
        )
        coordinator = TransformCoordinator.from_config(config)
        assert isinstance(coordinator.transport, RemoteTransport)
        assert coordinator.transport.base_url == "http://windify.test"

    def test_fake_transport_is_not_registered(self):
        from windify.transports import list_transports

        assert FakeTransport.kind not in list_transports()
        assert set(list_transports()) == {"worker", "remote"}
