from __future__ import annotations

import asyncio

import pytest

from dictato_providers import ProviderSettings, UnknownProviderError
from dictato_session import RecordingController, RecordingSession


class FakeProvider:
    def __init__(self, log: list[str], start_error: Exception | None = None, stop_error: Exception | None = None) -> None:
        self.log = log
        self.start_error = start_error
        self.stop_error = stop_error

    def get_name(self) -> str:
        return "fake"

    def get_type(self) -> str:
        return "batch"

    async def start(self, capture, visualizer) -> None:
        self.log.append("provider.start")
        if self.start_error is not None:
            raise self.start_error

    async def stop(self) -> None:
        self.log.append("provider.stop")
        if self.stop_error is not None:
            raise self.stop_error


class FakeCapture:
    def __init__(self, log: list[str]) -> None:
        self.log = log

    async def stop(self) -> None:
        self.log.append("capture.stop")

    async def cleanup(self) -> None:
        self.log.append("capture.cleanup")


class FakeVisualizer:
    def __init__(self, log: list[str], error: Exception | None = None) -> None:
        self.log = log
        self.error = error

    def stop(self) -> None:
        self.log.append("visualizer.stop")
        if self.error is not None:
            raise self.error


async def ignore(text: str) -> None:
    pass


def make_controller(log: list[str], providers: list[FakeProvider], visualizer: FakeVisualizer | None = None):
    built = iter(providers)
    return RecordingController(
        FakeCapture(log),
        visualizer or FakeVisualizer(log),
        "fake",
        ProviderSettings(api_key="k"),
        on_transcript=ignore,
        provider_builder=lambda on_transcript, on_interim: next(built),
    )


def test_stop_tears_down_provider_then_visualizer_then_capture() -> None:
    async def scenario() -> None:
        log: list[str] = []
        controller = make_controller(log, [FakeProvider(log)])

        assert await controller.start() is True
        assert controller.recording is True
        assert await controller.stop() is True

        assert log == ["provider.start", "provider.stop", "visualizer.stop", "capture.stop"]
        assert controller.recording is False
        assert await controller.stop() is False

    asyncio.run(scenario())


def test_only_one_session_at_a_time() -> None:
    async def scenario() -> None:
        log: list[str] = []
        controller = make_controller(log, [FakeProvider(log), FakeProvider(log)])

        assert await controller.start() is True
        first = controller.session
        assert await controller.start() is False

        assert controller.session is first
        assert log.count("provider.start") == 1

    asyncio.run(scenario())


def test_each_session_gets_a_fresh_provider() -> None:
    async def scenario() -> None:
        log: list[str] = []
        providers = [FakeProvider(log), FakeProvider(log)]
        controller = make_controller(log, providers)

        await controller.start()
        assert controller.session.provider is providers[0]
        await controller.stop()
        await controller.start()
        assert controller.session.provider is providers[1]

    asyncio.run(scenario())


def test_failing_step_does_not_skip_the_next_ones() -> None:
    async def scenario() -> None:
        log: list[str] = []
        controller = make_controller(
            log,
            [FakeProvider(log, stop_error=RuntimeError("socket gone"))],
            visualizer=FakeVisualizer(log, error=ValueError("bad frame")),
        )

        await controller.start()
        assert await controller.stop() is True

        assert log[-3:] == ["provider.stop", "visualizer.stop", "capture.stop"]
        assert controller.recording is False

    asyncio.run(scenario())


def test_start_failure_propagates_and_leaves_no_session() -> None:
    async def scenario() -> None:
        log: list[str] = []
        controller = make_controller(log, [FakeProvider(log, start_error=OSError("device busy")), FakeProvider(log)])

        with pytest.raises(OSError, match="device busy"):
            await controller.start()
        assert controller.recording is False
        assert controller.session is None

        assert await controller.start() is True

    asyncio.run(scenario())


def test_unknown_provider_propagates() -> None:
    async def scenario() -> None:
        log: list[str] = []
        controller = RecordingController(
            FakeCapture(log), FakeVisualizer(log), "nope", ProviderSettings(api_key="k"), on_transcript=ignore
        )

        with pytest.raises(UnknownProviderError):
            await controller.start()
        assert controller.recording is False
        assert log == []

    asyncio.run(scenario())


def test_toggle_alternates() -> None:
    async def scenario() -> None:
        log: list[str] = []
        controller = make_controller(log, [FakeProvider(log), FakeProvider(log)])

        assert await controller.toggle() is True
        assert await controller.toggle() is False
        assert await controller.toggle() is True

    asyncio.run(scenario())


def test_shutdown_releases_capture() -> None:
    async def scenario() -> None:
        log: list[str] = []
        controller = make_controller(log, [FakeProvider(log)])
        await controller.start()

        await controller.shutdown()

        assert log[-2:] == ["capture.stop", "capture.cleanup"]
        assert controller.session is None

        idle_log: list[str] = []
        idle = make_controller(idle_log, [])
        await idle.shutdown()
        assert idle_log == ["capture.cleanup"]

    asyncio.run(scenario())


def test_session_start_is_idempotent() -> None:
    async def scenario() -> None:
        log: list[str] = []
        session = RecordingSession(FakeProvider(log), FakeCapture(log), FakeVisualizer(log))

        await session.start()
        await session.start()
        await session.stop()
        await session.stop()

        assert log == ["provider.start", "provider.stop", "visualizer.stop", "capture.stop"]

    asyncio.run(scenario())
