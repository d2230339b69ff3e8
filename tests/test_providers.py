from __future__ import annotations

import asyncio
import json

import numpy as np
import pytest

from dictato_providers import (
    BackendError,
    BatchProvider,
    CartesiaProvider,
    DeepgramProvider,
    GeminiTranscriber,
    GroqTranscriber,
    ProviderName,
    ProviderSettings,
    ProviderType,
    SegmentTranscriber,
    UnknownProviderError,
    available_providers,
    create_provider,
    is_streaming_provider,
    resolve_language,
    soft_limit,
)

FRAME = 1600
SETTINGS = ProviderSettings(api_key="test-key")


def speech(frames: int = 1) -> np.ndarray:
    t = np.arange(FRAME * frames) / 16_000
    return (0.5 * np.sin(2 * np.pi * 440 * t)).astype(np.float32)


def silence(frames: int = 1) -> np.ndarray:
    return np.zeros(FRAME * frames, dtype=np.float32)


def feed(provider, samples: np.ndarray) -> None:
    for start in range(0, len(samples), FRAME):
        provider.handle_frame(samples[start : start + FRAME], 16_000)


class FakeTranscriber(SegmentTranscriber):
    NAME = ProviderName.GROQ

    def __init__(self, results: list[str | Exception]) -> None:
        self.results = list(results)
        self.calls: list[bytes] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def transcribe(self, wav: bytes) -> str:
        self.calls.append(wav)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            self.in_flight -= 1


class FakeCapture:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.on_frame = None

    async def start(self, on_frame):
        if self.error is not None:
            raise self.error
        self.on_frame = on_frame
        return self

    def set_monitor(self, monitor) -> None:
        pass


class FakeVisualizer:
    def __init__(self) -> None:
        self.connected = None
        self.started = False

    def connect(self, capture) -> None:
        self.connected = capture

    def start(self) -> None:
        self.started = True


class Sink:
    def __init__(self) -> None:
        self.texts: list[str] = []

    async def __call__(self, text: str) -> None:
        self.texts.append(text)


def test_factory_builds_batch_and_streaming_providers() -> None:
    async def scenario() -> None:
        sink = Sink()
        groq = create_provider(" Groq ", SETTINGS, sink)
        gemini = create_provider("gemini", SETTINGS, sink)
        deepgram = create_provider("deepgram", SETTINGS, sink)

        assert isinstance(groq, BatchProvider)
        assert isinstance(groq.transcriber, GroqTranscriber)
        assert groq.get_type() is ProviderType.BATCH
        assert isinstance(gemini.transcriber, GeminiTranscriber)
        assert isinstance(deepgram, DeepgramProvider)
        assert deepgram.get_type() is ProviderType.STREAMING
        assert deepgram.get_name() == "deepgram"

    asyncio.run(scenario())


def test_factory_rejects_unknown_provider() -> None:
    with pytest.raises(UnknownProviderError, match="whisperx"):
        create_provider("whisperx", SETTINGS, Sink())


def test_provider_catalog() -> None:
    assert set(available_providers()) == {"groq", "gemini", "mistral", "sambanova", "fireworks", "deepgram", "cartesia"}
    assert is_streaming_provider("cartesia") is True
    assert is_streaming_provider("mistral") is False


def test_resolve_language() -> None:
    assert resolve_language(None) is None
    assert resolve_language("  ") is None
    assert resolve_language("Multilingual") is None
    assert resolve_language(" fr ") == "fr"


def test_batch_provider_transcribes_segments_in_order_one_at_a_time() -> None:
    async def scenario() -> None:
        sink = Sink()
        transcriber = FakeTranscriber(["first", "second"])
        provider = BatchProvider(SETTINGS, sink, transcriber)
        capture, visualizer = FakeCapture(), FakeVisualizer()

        await provider.start(capture, visualizer)
        assert capture.on_frame == provider.handle_frame
        assert visualizer.connected is capture and visualizer.started
        feed(provider, np.concatenate([speech(5), silence(7), speech(5), silence(7)]))
        await provider.stop()

        assert sink.texts == ["first", "second"]
        assert transcriber.max_in_flight == 1
        assert provider.segments_sent == 2
        assert transcriber.calls[0][:4] == b"RIFF"

    asyncio.run(scenario())


def test_batch_provider_skips_failed_segment() -> None:
    async def scenario() -> None:
        sink = Sink()
        transcriber = FakeTranscriber([BackendError("boom"), "", "kept"])
        provider = BatchProvider(SETTINGS, sink, transcriber)

        await provider.start(FakeCapture(), FakeVisualizer())
        feed(provider, np.concatenate([speech(5), silence(7)] * 3))
        await provider.stop()

        assert sink.texts == ["kept"]
        assert provider.segments_sent == 3

    asyncio.run(scenario())


def test_batch_provider_survives_unexpected_transcriber_error() -> None:
    async def scenario() -> None:
        sink = Sink()
        transcriber = FakeTranscriber([RuntimeError("malformed response"), KeyError("text"), "still here"])
        provider = BatchProvider(SETTINGS, sink, transcriber)

        await provider.start(FakeCapture(), FakeVisualizer())
        feed(provider, np.concatenate([speech(5), silence(7)] * 3))
        await provider.stop()

        assert sink.texts == ["still here"]
        assert len(transcriber.calls) == 3

    asyncio.run(scenario())


def test_batch_provider_flushes_pending_speech_on_stop() -> None:
    async def scenario() -> None:
        sink = Sink()
        provider = BatchProvider(SETTINGS, sink, FakeTranscriber(["tail"]))

        await provider.start(FakeCapture(), FakeVisualizer())
        feed(provider, speech(5))
        assert provider.segments_sent == 0
        await provider.stop()

        assert sink.texts == ["tail"]
        assert provider.active is False

    asyncio.run(scenario())


def test_batch_provider_ignores_frames_when_inactive() -> None:
    async def scenario() -> None:
        sink = Sink()
        transcriber = FakeTranscriber(["never"])
        provider = BatchProvider(SETTINGS, sink, transcriber)

        feed(provider, np.concatenate([speech(5), silence(7)]))
        await provider.stop()

        assert transcriber.calls == []

    asyncio.run(scenario())


def test_batch_provider_start_failure_leaves_provider_inactive() -> None:
    async def scenario() -> None:
        provider = BatchProvider(SETTINGS, Sink(), FakeTranscriber([]))
        visualizer = FakeVisualizer()

        with pytest.raises(RuntimeError, match="no microphone"):
            await provider.start(FakeCapture(error=RuntimeError("no microphone")), visualizer)

        assert provider.active is False
        assert visualizer.started is False

    asyncio.run(scenario())


def test_streaming_start_failure_cancels_connection() -> None:
    async def scenario() -> None:
        provider = DeepgramProvider(SETTINGS, Sink())

        with pytest.raises(RuntimeError):
            await provider.start(FakeCapture(error=RuntimeError("no microphone")), FakeVisualizer())

        assert provider.active is False
        assert provider.session_id is None
        assert provider._runner is None

    asyncio.run(scenario())


def deepgram_results(transcript: str, is_final: bool, **extra) -> str:
    return json.dumps(
        {
            "type": "Results",
            "is_final": is_final,
            "channel": {"alternatives": [{"transcript": transcript}]},
            **extra,
        }
    )


def test_deepgram_delivers_finals_and_reports_interims() -> None:
    async def scenario() -> None:
        sink = Sink()
        interims: list[str] = []
        provider = DeepgramProvider(SETTINGS, sink, interims.append)

        await provider.handle_message(deepgram_results("hel", False))
        await provider.handle_message(deepgram_results("hello there", True))
        await provider.handle_message(deepgram_results("", True))
        await provider.handle_message("not json")
        await provider.handle_message(json.dumps(["a", "list"]))

        assert interims == ["hel"]
        assert sink.texts == ["hello there"]

    asyncio.run(scenario())


def test_deepgram_session_id_follows_server_request_id() -> None:
    async def scenario() -> None:
        provider = DeepgramProvider(SETTINGS, Sink())
        provider.session_id = "local"

        await provider.handle_message(json.dumps({"type": "Metadata", "request_id": "req-1"}))
        assert provider.session_id == "req-1"

        await provider.handle_message(deepgram_results("hi", True, metadata={"request_id": "req-2"}))
        assert provider.session_id == "req-2"

    asyncio.run(scenario())


def test_deepgram_url_reflects_settings() -> None:
    provider = DeepgramProvider(ProviderSettings(api_key="k", text_formatted=False), Sink())

    assert "language=multi" in provider.ws_url
    assert "punctuate=false" in provider.ws_url
    assert "sample_rate=16000" in provider.ws_url
    assert provider.ws_headers == {"Authorization": "Token k"}

    french = DeepgramProvider(ProviderSettings(api_key="k", language="fr"), Sink())
    assert "language=fr" in french.ws_url
    assert "smart_format=true" in french.ws_url


def test_cartesia_events_and_url() -> None:
    async def scenario() -> None:
        sink = Sink()
        interims: list[str] = []
        provider = CartesiaProvider(ProviderSettings(api_key="secret", language="de"), sink, interims.append)

        assert "api_key=secret" in provider.ws_url
        assert "language=de" in provider.ws_url
        assert "encoding=pcm_s16le" in provider.ws_url

        await provider.handle_message(json.dumps({"type": "transcript", "text": "hallo", "is_final": False, "request_id": "c-1"}))
        await provider.handle_message(json.dumps({"type": "transcript", "text": "hallo welt", "is_final": True}))
        await provider.handle_message(json.dumps({"type": "error", "message": "quota"}))

        assert interims == ["hallo"]
        assert sink.texts == ["hallo welt"]
        assert provider.session_id == "c-1"

    asyncio.run(scenario())


def test_streaming_frames_are_16k_pcm_and_bounded() -> None:
    async def scenario() -> None:
        provider = DeepgramProvider(SETTINGS, Sink())
        provider._active = True
        provider.MAX_QUEUED_CHUNKS = 2

        for _ in range(3):
            provider.handle_frame(np.zeros(4800, dtype=np.float32), 48_000)

        assert provider._audio.qsize() == 2
        assert provider.dropped_chunks == 1
        assert len(provider._audio.get_nowait()) == 1600 * 2

    asyncio.run(scenario())


def test_soft_limit_only_touches_hot_frames() -> None:
    quiet = np.array([0.1, 0.6, -0.8], dtype=np.float32)
    assert soft_limit(quiet) is quiet

    hot = np.array([0.2, 0.95, -0.6], dtype=np.float32)
    limited = soft_limit(hot)
    assert np.allclose(limited, [0.2, 0.285, -0.18])
    assert hot[1] == np.float32(0.95)


def test_transcript_sink_failure_does_not_escape() -> None:
    async def failing(text: str) -> None:
        raise ValueError("injector exploded")

    async def scenario() -> None:
        provider = DeepgramProvider(SETTINGS, failing)
        await provider.handle_message(deepgram_results("hello", True))

    asyncio.run(scenario())
