from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from dictato_console import debug, warn
from dictato_providers import BaseProvider, InterimSink, ProviderSettings, TranscriptSink, create_provider

if TYPE_CHECKING:
    from dictato_capture import AudioCaptureManager
    from dictato_visualizer import AudioVisualizer


class RecordingSession:
    """Sequences one provider, the shared capture manager and the visualizer.

    ``start`` marks the session active only once the provider (and through it
    the capture) started. ``stop`` marks it inactive first, then stops the
    provider, the visualizer and the capture, in that order, each step guarded
    so one failure does not skip the next. The capture is stopped but kept
    open; ``cleanup`` releases it.
    """

    def __init__(self, provider: BaseProvider, capture: AudioCaptureManager, visualizer: AudioVisualizer):
        self.provider = provider
        self.capture = capture
        self.visualizer = visualizer
        self.active = False

    async def start(self) -> None:
        if self.active:
            warn("session", "recording session already active; start ignored")
            return
        await self.provider.start(self.capture, self.visualizer)
        self.active = True
        debug(f"[SESSION] started with {self.provider.get_name()} ({self.provider.get_type()})")

    async def stop(self) -> None:
        if not self.active:
            return
        self.active = False
        await self._guarded("provider stop", self.provider.stop)
        await self._guarded("visualizer stop", self.visualizer.stop)
        await self._guarded("capture stop", self.capture.stop)
        debug("[SESSION] stopped")

    async def cleanup(self) -> None:
        await self.stop()
        await self._guarded("capture cleanup", self.capture.cleanup)

    @staticmethod
    async def _guarded(step: str, action: Callable[[], Awaitable[None] | None]) -> None:
        try:
            result = action()
            if asyncio.iscoroutine(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            warn("session", f"{step} failed: {exc}")


ProviderBuilder = Callable[[TranscriptSink, InterimSink | None], BaseProvider]


class RecordingController:
    """Process-wide recording context: at most one active session at a time.

    Holds the shared capture manager and visualizer, and builds a fresh
    provider for every session.
    """

    def __init__(
        self,
        capture: AudioCaptureManager,
        visualizer: AudioVisualizer,
        provider_name: str,
        settings: ProviderSettings,
        on_transcript: TranscriptSink,
        on_interim: InterimSink | None = None,
        provider_builder: ProviderBuilder | None = None,
    ):
        self.capture = capture
        self.visualizer = visualizer
        self.provider_name = provider_name
        self.settings = settings
        self.on_transcript = on_transcript
        self.on_interim = on_interim
        self.provider_builder = provider_builder
        self.session: RecordingSession | None = None
        self._lock = asyncio.Lock()

    @property
    def recording(self) -> bool:
        return self.session is not None and self.session.active

    def build_provider(self) -> BaseProvider:
        if self.provider_builder is not None:
            return self.provider_builder(self.on_transcript, self.on_interim)
        return create_provider(self.provider_name, self.settings, self.on_transcript, self.on_interim)

    async def start(self) -> bool:
        """Start a new session. Returns False when one is already active.

        ``UnknownProviderError`` and ``CaptureError`` propagate, leaving no active session.
        """
        async with self._lock:
            if self.recording:
                warn("session", "a recording session is already active")
                return False
            session = RecordingSession(self.build_provider(), self.capture, self.visualizer)
            await session.start()
            self.session = session
            return True

    async def stop(self) -> bool:
        async with self._lock:
            session, self.session = self.session, None
            if session is None or not session.active:
                return False
            await session.stop()
            return True

    async def toggle(self) -> bool:
        """Start when idle, stop when recording. Returns the new recording state."""
        if self.recording:
            await self.stop()
            return False
        return await self.start()

    async def shutdown(self) -> None:
        async with self._lock:
            session, self.session = self.session, None
            if session is not None:
                await session.cleanup()
            else:
                await RecordingSession._guarded("capture cleanup", self.capture.cleanup)
