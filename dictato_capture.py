from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import suppress

import janus
import numpy as np
import sounddevice as sd

from dictato_audio import AudioFrame, mix_to_mono
from dictato_console import debug, warn


class CaptureError(RuntimeError):
    """The microphone could not be opened (missing device, denied access, PortAudio failure)."""


FrameHandler = Callable[[np.ndarray, int], None]


class AudioCaptureManager:
    """Owns the microphone stream and delivers mono float frames in capture order.

    The PortAudio callback only downmixes and pushes frames into a bounded janus
    queue. A pump task on the event loop pulls them and calls the registered
    frame handler, then the optional monitor (the visualizer).
    """

    BLOCK_SIZE = 4096
    MAX_CHANNELS = 2
    QUEUE_MAX_FRAMES = 64

    def __init__(self, device: int | str | None = None, sample_rate: int | None = None, gain: float = 1.0):
        self._device = device
        self._requested_rate = sample_rate
        self.gain = gain
        self.sample_rate: int | None = None
        self.channels: int | None = None
        self._stream: sd.InputStream | None = None
        self._frames: janus.Queue[AudioFrame | None] | None = None
        self._pump_task: asyncio.Task | None = None
        self._on_frame: FrameHandler | None = None
        self._monitor: Callable[[AudioFrame], None] | None = None
        self._active = False
        self.dropped_frames = 0

    @property
    def active(self) -> bool:
        return self._active

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    def set_monitor(self, monitor: Callable[[AudioFrame], None] | None) -> None:
        self._monitor = monitor

    async def start(self, on_frame: FrameHandler) -> AudioCaptureManager:
        if self._active:
            warn("capture", "capture already running; start ignored")
            return self
        self._on_frame = on_frame
        try:
            self._ensure_stream()
            self._frames = janus.Queue(maxsize=self.QUEUE_MAX_FRAMES)
            self._pump_task = asyncio.create_task(self._pump(self._frames))
            self._stream.start()
        except Exception as exc:
            await self.cleanup()
            if isinstance(exc, CaptureError):
                raise
            raise CaptureError(f"Unable to start microphone capture: {exc}") from exc
        self._active = True
        debug(f"[CAPTURE] started at {self.sample_rate} Hz, {self.channels} channel(s)")
        return self

    async def stop(self) -> None:
        """Stop frame delivery but keep the stream open so the next start is fast."""
        if not self._active:
            return
        self._active = False
        if self._stream is not None:
            with suppress(sd.PortAudioError):
                self._stream.stop()
        await self._close_frames(drain=True)
        debug("[CAPTURE] stopped (device kept open)")

    async def cleanup(self) -> None:
        if self._active:
            await self.stop()
        await self._close_frames(drain=False)
        if self._stream is not None:
            stream, self._stream = self._stream, None
            with suppress(sd.PortAudioError):
                stream.close()
            debug("[CAPTURE] device released")
        self._on_frame = None

    def _ensure_stream(self) -> None:
        if self._stream is not None:
            return
        try:
            info = sd.query_devices(self._device, "input")
        except (ValueError, sd.PortAudioError) as exc:
            raise CaptureError(f"No usable input device: {exc}") from exc
        max_channels = int(info["max_input_channels"])
        if max_channels < 1:
            raise CaptureError(f'Device "{info["name"]}" has no input channel')
        self.channels = min(max_channels, self.MAX_CHANNELS)
        self.sample_rate = int(self._requested_rate or info["default_samplerate"])
        try:
            self._stream = sd.InputStream(
                device=self._device,
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="float32",
                blocksize=self.BLOCK_SIZE,
                callback=self._callback,
            )
        except sd.PortAudioError as exc:
            raise CaptureError(f"Unable to open microphone: {exc}") from exc

    async def _close_frames(self, drain: bool) -> None:
        queue, task = self._frames, self._pump_task
        self._frames = None
        self._pump_task = None
        if task is not None:
            if drain:
                # the pump exits on the sentinel once earlier frames are handled
                await queue.async_q.put(None)
                await task
            else:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        if queue is not None:
            queue.close()
            await queue.wait_closed()

    def _callback(self, indata, frames, time_info, status):  # pragma: no cover - sounddevice callback
        if status:
            debug(f"[CAPTURE] stream status: {status}")
        queue = self._frames
        if queue is None:
            return
        samples = mix_to_mono(indata)
        if self.gain != 1.0:
            samples = np.clip(samples * self.gain, -1.0, 1.0).astype(np.float32)
        try:
            queue.sync_q.put_nowait(AudioFrame(samples, self.sample_rate))
        except janus.SyncQueueFull:
            self.dropped_frames += 1
        except (janus.SyncQueueShutDown, RuntimeError):
            pass

    async def _pump(self, queue: janus.Queue[AudioFrame | None]) -> None:
        while True:
            frame = await queue.async_q.get()
            if frame is None:
                break
            self.deliver(frame)

    def deliver(self, frame: AudioFrame) -> None:
        if self._on_frame is not None:
            try:
                self._on_frame(frame.samples, frame.sample_rate)
            except Exception as exc:
                warn("capture", f"frame handler failed: {exc}")
        if self._monitor is not None:
            try:
                self._monitor(frame)
            except Exception as exc:
                debug(f"[CAPTURE] monitor failed: {exc}")
