from __future__ import annotations

import asyncio

import numpy as np
import pytest

try:
    import dictato_capture
except OSError as exc:  # sounddevice could not load PortAudio
    pytest.skip(f"PortAudio unavailable: {exc}", allow_module_level=True)

from dictato_audio import AudioFrame
from dictato_capture import AudioCaptureManager, CaptureError


class FakeStream:
    instances: list[FakeStream] = []

    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        self.started = False
        self.closed = False
        FakeStream.instances.append(self)

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.started = False

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_sd(monkeypatch):  # noqa: ANN001, ANN201
    FakeStream.instances = []
    device = {"name": "Test mic", "max_input_channels": 4, "default_samplerate": 48_000.0}
    monkeypatch.setattr(dictato_capture.sd, "query_devices", lambda device_id=None, kind=None: device)
    monkeypatch.setattr(dictato_capture.sd, "InputStream", FakeStream)
    return device


def test_start_opens_stream_with_device_defaults(fake_sd) -> None:  # noqa: ANN001
    async def scenario() -> None:
        capture = AudioCaptureManager()

        await capture.start(lambda samples, rate: None)

        stream = FakeStream.instances[0]
        assert stream.started is True
        assert stream.kwargs["samplerate"] == 48_000
        assert stream.kwargs["channels"] == 2
        assert stream.kwargs["dtype"] == "float32"
        assert capture.active is True
        await capture.cleanup()

    asyncio.run(scenario())


def test_frames_are_downmixed_and_delivered_in_order(fake_sd) -> None:  # noqa: ANN001
    async def scenario() -> None:
        received: list[tuple[np.ndarray, int]] = []
        capture = AudioCaptureManager()
        await capture.start(lambda samples, rate: received.append((samples, rate)))

        capture._callback(np.full((4, 2), 0.5, dtype=np.float32), 4, None, None)
        capture._callback(np.array([[0.2, 0.4]] * 4, dtype=np.float32), 4, None, None)
        await capture.stop()

        assert [rate for _, rate in received] == [48_000, 48_000]
        assert np.allclose(received[0][0], [0.5] * 4)
        assert np.allclose(received[1][0], [0.3] * 4)
        await capture.cleanup()

    asyncio.run(scenario())


def test_gain_is_applied_and_clipped(fake_sd) -> None:  # noqa: ANN001
    async def scenario() -> None:
        received: list[np.ndarray] = []
        capture = AudioCaptureManager(gain=2.0)
        await capture.start(lambda samples, rate: received.append(samples))

        capture._callback(np.array([[0.25], [0.75], [-0.9]], dtype=np.float32), 3, None, None)
        await capture.stop()

        assert np.allclose(received[0], [0.5, 1.0, -1.0])
        await capture.cleanup()

    asyncio.run(scenario())


def test_stop_keeps_device_open_until_cleanup(fake_sd) -> None:  # noqa: ANN001
    async def scenario() -> None:
        capture = AudioCaptureManager()
        await capture.start(lambda samples, rate: None)

        await capture.stop()
        stream = FakeStream.instances[0]
        assert capture.active is False
        assert capture.is_open is True
        assert stream.started is False and stream.closed is False

        await capture.start(lambda samples, rate: None)
        assert len(FakeStream.instances) == 1

        await capture.cleanup()
        assert stream.closed is True
        assert capture.is_open is False

    asyncio.run(scenario())


def test_second_start_is_ignored(fake_sd) -> None:  # noqa: ANN001
    async def scenario() -> None:
        capture = AudioCaptureManager()
        first = await capture.start(lambda samples, rate: None)
        second = await capture.start(lambda samples, rate: None)

        assert first is second is capture
        assert len(FakeStream.instances) == 1
        await capture.cleanup()

    asyncio.run(scenario())


def test_missing_device_raises_capture_error(monkeypatch) -> None:  # noqa: ANN001
    def no_device(device_id=None, kind=None):  # noqa: ANN001, ANN202
        raise ValueError("No input device matching 'x'")

    monkeypatch.setattr(dictato_capture.sd, "query_devices", no_device)

    async def scenario() -> None:
        capture = AudioCaptureManager(device="x")

        with pytest.raises(CaptureError):
            await capture.start(lambda samples, rate: None)
        assert capture.active is False
        assert capture.is_open is False

    asyncio.run(scenario())


def test_device_without_inputs_raises_capture_error(fake_sd) -> None:  # noqa: ANN001
    fake_sd["max_input_channels"] = 0

    async def scenario() -> None:
        with pytest.raises(CaptureError, match="no input channel"):
            await AudioCaptureManager().start(lambda samples, rate: None)

    asyncio.run(scenario())


def test_handler_failure_does_not_starve_monitor() -> None:
    seen: list[AudioFrame] = []

    def broken(samples, rate) -> None:  # noqa: ANN001
        raise RuntimeError("segmenter bug")

    capture = AudioCaptureManager()
    capture._on_frame = broken
    capture.set_monitor(seen.append)
    frame = AudioFrame(np.zeros(8, dtype=np.float32), 16_000)

    capture.deliver(frame)

    assert seen == [frame]
