from __future__ import annotations

import asyncio
import base64
import json
import time
import urllib.parse
import uuid
from asyncio import CancelledError, create_task
from collections.abc import Awaitable, Callable
from contextlib import suppress
from enum import StrEnum
from functools import cached_property
from typing import TYPE_CHECKING, NamedTuple

import numpy as np
import websockets
from openai import AsyncOpenAI, OpenAIError

from dictato_audio import Segmenter, downsample_to_16k_int16, encode_wav_16k_mono
from dictato_console import DEBUG_TO_STDOUT, debug, errprint, warn

if TYPE_CHECKING:
    from dictato_capture import AudioCaptureManager
    from dictato_visualizer import AudioVisualizer

TranscriptSink = Callable[[str], Awaitable[None]]
InterimSink = Callable[[str], None]


class BackendError(RuntimeError):
    """A transcription or rewrite backend call failed or could not be made."""


class UnknownProviderError(ValueError):
    pass


class ProviderType(StrEnum):
    BATCH = "batch"
    STREAMING = "streaming"


class ProviderName(StrEnum):
    GROQ = "groq"
    GEMINI = "gemini"
    MISTRAL = "mistral"
    SAMBANOVA = "sambanova"
    FIREWORKS = "fireworks"
    DEEPGRAM = "deepgram"
    CARTESIA = "cartesia"


class ProviderSettings(NamedTuple):
    api_key: str
    language: str | None = None
    text_formatted: bool = True
    insertion_mode: str = "clipboard"
    voice_commands_enabled: bool = True


def resolve_language(language: str | None) -> str | None:
    """Return the language code to send to a backend, or None for auto-detect."""
    if not language:
        return None
    language = language.strip()
    if not language or language.lower() == "multilingual":
        return None
    return language


class BaseProvider:
    TYPE: ProviderType

    def __init__(self, settings: ProviderSettings, on_transcript: TranscriptSink, on_interim: InterimSink | None = None):
        self.settings = settings
        self.on_transcript = on_transcript
        self.on_interim = on_interim
        self.session_id: str | None = None
        self._active = False

    def get_type(self) -> ProviderType:
        return self.TYPE

    def get_name(self) -> str:
        raise NotImplementedError

    @property
    def active(self) -> bool:
        return self._active

    @property
    def language(self) -> str | None:
        return resolve_language(self.settings.language)

    async def start(self, capture: AudioCaptureManager, visualizer: AudioVisualizer) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError

    async def _deliver(self, text: str) -> None:
        text = text.strip()
        if not text:
            return
        try:
            await self.on_transcript(text)
        except CancelledError:
            raise
        except Exception as exc:
            warn(self.get_name(), f"transcript handling failed: {exc}")


# Batch (upload a clip per segment)


class SegmentTranscriber:
    """One backend call per encoded 16 kHz WAV clip."""

    NAME: ProviderName

    async def transcribe(self, wav: bytes) -> str:
        raise NotImplementedError


class OpenAICompatibleTranscriber(SegmentTranscriber):
    BASE_URL: str
    MODEL: str
    RESPONSE_FORMAT = "json"
    EXTRA_BODY: dict[str, str] = {}
    REQUEST_TIMEOUT_SECONDS = 30.0
    MAX_RETRIES = 2

    def __init__(self, settings: ProviderSettings):
        self.settings = settings
        self.client = AsyncOpenAI(
            api_key=settings.api_key,
            base_url=self.BASE_URL,
            timeout=self.REQUEST_TIMEOUT_SECONDS,
            max_retries=self.MAX_RETRIES,
        )

    def _request_kwargs(self, wav: bytes) -> dict:
        kwargs = {
            "model": self.MODEL,
            "file": ("segment.wav", wav, "audio/wav"),
            "response_format": self.RESPONSE_FORMAT,
        }
        if language := resolve_language(self.settings.language):
            kwargs["language"] = language
        if self.EXTRA_BODY:
            kwargs["extra_body"] = dict(self.EXTRA_BODY)
        return kwargs

    async def transcribe(self, wav: bytes) -> str:
        try:
            result = await self.client.audio.transcriptions.create(**self._request_kwargs(wav))
        except OpenAIError as exc:
            raise BackendError(f"{self.NAME} transcription failed: {exc}") from exc
        return self._extract_text(result)

    @staticmethod
    def _extract_text(result) -> str:
        if isinstance(result, str):
            return result.strip()
        if text := (getattr(result, "text", None) or "").strip():
            return text
        for segment in getattr(result, "segments", None) or []:
            value = segment.get("text") if isinstance(segment, dict) else getattr(segment, "text", None)
            if value and value.strip():
                return value.strip()
        return ""


class GroqTranscriber(OpenAICompatibleTranscriber):
    NAME = ProviderName.GROQ
    BASE_URL = "https://api.groq.com/openai/v1"
    MODEL = "whisper-large-v3-turbo"
    RESPONSE_FORMAT = "verbose_json"


class SambaNovaTranscriber(OpenAICompatibleTranscriber):
    NAME = ProviderName.SAMBANOVA
    BASE_URL = "https://api.sambanova.ai/v1"
    MODEL = "Whisper-Large-v3"


class FireworksTranscriber(OpenAICompatibleTranscriber):
    NAME = ProviderName.FIREWORKS
    BASE_URL = "https://audio-prod.us-virginia-1.direct.fireworks.ai/v1"
    MODEL = "whisper-v3"
    EXTRA_BODY = {
        "vad_model": "silero",
        "alignment_model": "tdnn_ffn",
        "preprocessing": "none",
        "temperature": "0,0.2,0.4,0.6,0.8,1",
        "timestamp_granularities": "segment",
    }


class MistralTranscriber(OpenAICompatibleTranscriber):
    NAME = ProviderName.MISTRAL
    BASE_URL = "https://api.mistral.ai/v1"
    MODEL = "voxtral-mini-2507"


class GeminiTranscriber(SegmentTranscriber):
    NAME = ProviderName.GEMINI
    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
    MODEL = "gemini-flash-lite-latest"
    PROMPT = "Generate a transcript of the speech."
    REQUEST_TIMEOUT_SECONDS = 30.0
    MAX_RETRIES = 2

    def __init__(self, settings: ProviderSettings):
        self.settings = settings
        self.client = AsyncOpenAI(
            api_key=settings.api_key,
            base_url=self.BASE_URL,
            timeout=self.REQUEST_TIMEOUT_SECONDS,
            max_retries=self.MAX_RETRIES,
        )

    @property
    def prompt(self) -> str:
        if language := resolve_language(self.settings.language):
            return f"{self.PROMPT} The speech is in language '{language}'. Return only the transcript."
        return f"{self.PROMPT} Return only the transcript."

    async def transcribe(self, wav: bytes) -> str:
        try:
            completion = await self.client.chat.completions.create(
                model=self.MODEL,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": self.prompt},
                            {
                                "type": "input_audio",
                                "input_audio": {"data": base64.b64encode(wav).decode("ascii"), "format": "wav"},
                            },
                        ],
                    }
                ],
            )
        except OpenAIError as exc:
            raise BackendError(f"{self.NAME} transcription failed: {exc}") from exc
        if not completion.choices:
            return ""
        return (completion.choices[0].message.content or "").strip()


class BatchProvider(BaseProvider):
    """Cuts the capture stream with a Segmenter and uploads each clip through a transcriber.

    Cut clips wait in a queue drained by a single worker, so a provider never
    has more than one backend call in flight and clips are transcribed in order.
    A failed clip is logged and skipped.
    """

    TYPE = ProviderType.BATCH

    def __init__(
        self,
        settings: ProviderSettings,
        on_transcript: TranscriptSink,
        transcriber: SegmentTranscriber,
        segmenter: Segmenter | None = None,
        on_interim: InterimSink | None = None,
    ):
        super().__init__(settings, on_transcript, on_interim)
        self.transcriber = transcriber
        self.segmenter = segmenter or Segmenter()
        self._pending: asyncio.Queue[np.ndarray | None] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self.segments_sent = 0

    def get_name(self) -> str:
        return str(self.transcriber.NAME)

    async def start(self, capture: AudioCaptureManager, visualizer: AudioVisualizer) -> None:
        if self._active:
            warn(self.get_name(), "provider already started")
            return
        self.segmenter.reset()
        self._pending = asyncio.Queue()
        self._worker = create_task(self._transcribe_segments())
        self._active = True
        try:
            await capture.start(self.handle_frame)
        except BaseException:
            self._active = False
            await self._stop_worker()
            raise
        visualizer.connect(capture)
        visualizer.start()

    def handle_frame(self, samples: np.ndarray, sample_rate: int) -> None:
        if not self._active:
            return
        region = self.segmenter.push(samples, sample_rate)
        if region is not None:
            self._queue_segment(region)

    def _queue_segment(self, region: np.ndarray) -> None:
        if DEBUG_TO_STDOUT:
            debug(f"[{self.get_name().upper()}] segment of {len(region) / 16:.0f} ms queued")
        self._pending.put_nowait(region)

    async def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        if (region := self.segmenter.flush()) is not None:
            self._queue_segment(region)
        await self._stop_worker()

    async def _stop_worker(self) -> None:
        worker, self._worker = self._worker, None
        if worker is None:
            return
        self._pending.put_nowait(None)
        await worker

    async def _transcribe_segments(self) -> None:
        while True:
            region = await self._pending.get()
            if region is None:
                break
            await self.transcribe_segment(encode_wav_16k_mono(region))

    async def transcribe_segment(self, wav: bytes) -> None:
        self.segments_sent += 1
        started = time.perf_counter()
        try:
            text = await self.transcriber.transcribe(wav)
        except Exception as exc:
            # one bad segment must not end the worker and strand the next ones
            warn(self.get_name(), f"segment transcription failed: {exc}")
            return
        debug(f"[{self.get_name().upper()}] {time.perf_counter() - started:.2f}s -> {text!r}")
        if not text:
            return
        await self._deliver(text)


# Streaming (persistent socket)


def soft_limit(samples: np.ndarray) -> np.ndarray:
    """Attenuate loud samples of a frame whose peak is close to full scale."""
    if len(samples) == 0 or float(np.max(np.abs(samples))) <= 0.9:
        return samples
    limited = np.array(samples, dtype=np.float32, copy=True)
    loud = np.abs(limited) > 0.5
    limited[loud] *= 0.3
    return limited


class StreamingProvider(BaseProvider):
    """Forwards 16 kHz PCM chunks over a websocket and delivers the backend's final events.

    Interim events only feed ``on_interim``. The connection is retried with
    backoff while the provider is active; audio captured meanwhile waits in
    a bounded queue.
    """

    TYPE = ProviderType.STREAMING
    NAME: ProviderName
    MAX_QUEUED_CHUNKS = 512
    CLOSE_TIMEOUT_SECONDS = 2.0
    WS_MAX_RETRY_ATTEMPTS = 5
    WS_RETRY_BASE_DELAY_SECONDS = 0.5
    WS_RETRY_MAX_DELAY_SECONDS = 4.0

    def __init__(self, settings: ProviderSettings, on_transcript: TranscriptSink, on_interim: InterimSink | None = None):
        super().__init__(settings, on_transcript, on_interim)
        self._audio: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._runner: asyncio.Task | None = None
        self.dropped_chunks = 0

    def get_name(self) -> str:
        return str(self.NAME)

    @cached_property
    def ws_url(self) -> str:
        raise NotImplementedError

    @cached_property
    def ws_headers(self) -> dict[str, str]:
        return {}

    async def on_connected(self, ws):
        pass

    def encode_frame(self, samples: np.ndarray, sample_rate: int) -> bytes:
        return downsample_to_16k_int16(samples, sample_rate).astype("<i2").tobytes()

    async def send_end_of_stream(self, ws):
        raise NotImplementedError

    def parse_event(self, event: dict) -> tuple[str, bool] | None:
        """Return ``(text, is_final)`` for transcript events, None for anything else."""
        raise NotImplementedError

    def request_id_of(self, event: dict) -> str | None:
        return event.get("request_id")

    async def start(self, capture: AudioCaptureManager, visualizer: AudioVisualizer) -> None:
        if self._active:
            warn(self.get_name(), "provider already started")
            return
        self.session_id = uuid.uuid4().hex
        self._audio = asyncio.Queue()
        self._active = True
        self._runner = create_task(self._run())
        try:
            await capture.start(self.handle_frame)
        except BaseException:
            self._active = False
            await self._stop_runner(graceful=False)
            raise
        visualizer.connect(capture)
        visualizer.start()

    def handle_frame(self, samples: np.ndarray, sample_rate: int) -> None:
        if not self._active:
            return
        if self._audio.qsize() >= self.MAX_QUEUED_CHUNKS:
            self.dropped_chunks += 1
            return
        self._audio.put_nowait(self.encode_frame(samples, sample_rate))

    async def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        await self._stop_runner(graceful=True)

    async def _stop_runner(self, graceful: bool) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            if graceful:
                self._audio.put_nowait(None)
                try:
                    await asyncio.wait_for(runner, timeout=self.CLOSE_TIMEOUT_SECONDS * 2)
                except TimeoutError:
                    warn(self.get_name(), "stream did not close in time")
            else:
                runner.cancel()
                with suppress(CancelledError):
                    await runner
        self.session_id = None

    def _retry_delay(self, attempt: int) -> float:
        return min(self.WS_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)), self.WS_RETRY_MAX_DELAY_SECONDS)

    async def _run(self) -> None:
        attempt = 0
        while True:
            try:
                async with websockets.connect(self.ws_url, additional_headers=self.ws_headers, max_size=None) as ws:
                    attempt = 0
                    debug(f"[{self.get_name().upper()}] connected (session {self.session_id})")
                    await self.on_connected(ws)
                    await self._exchange(ws)
                    return
            except CancelledError:
                raise
            except (OSError, TimeoutError, websockets.WebSocketException, BackendError) as exc:
                attempt += 1
                errprint(f"WARNING: [{self.get_name()}] stream failed (attempt {attempt}/{self.WS_MAX_RETRY_ATTEMPTS}): {exc}")
                if not self._active or attempt >= self.WS_MAX_RETRY_ATTEMPTS:
                    if self._active:
                        errprint(f"ERROR: [{self.get_name()}] giving up on streaming transcription for this session")
                    return
                await asyncio.sleep(self._retry_delay(attempt))

    async def _exchange(self, ws) -> None:
        sender = create_task(self._sender(ws))
        receiver = create_task(self._receiver(ws))
        try:
            done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if sender in done:
                sender.result()
                # end of stream sent: keep reading final events until the server closes
                with suppress(TimeoutError, websockets.ConnectionClosed):
                    await asyncio.wait_for(receiver, timeout=self.CLOSE_TIMEOUT_SECONDS)
                return
            receiver.result()
            raise BackendError("connection closed by server")
        finally:
            for task in (sender, receiver):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sender, receiver, return_exceptions=True)

    async def _sender(self, ws) -> None:
        while True:
            chunk = await self._audio.get()
            if chunk is None:
                await self.send_end_of_stream(ws)
                return
            await ws.send(chunk)

    async def _receiver(self, ws) -> None:
        with suppress(websockets.ConnectionClosedOK):
            async for raw in ws:
                await self.handle_message(raw)

    async def handle_message(self, raw) -> None:
        try:
            event = json.loads(raw)
        except (TypeError, ValueError):
            debug(f"[{self.get_name().upper()}] ignored non-JSON message")
            return
        if not isinstance(event, dict):
            return
        if DEBUG_TO_STDOUT:
            debug(f"[{self.get_name().upper()}] [EVENT] {event=}")
        if request_id := self.request_id_of(event):
            self.session_id = str(request_id)
        parsed = self.parse_event(event)
        if parsed is None:
            return
        text, is_final = parsed
        if is_final:
            await self._deliver(text)
        elif self.on_interim is not None:
            self.on_interim(text)


class DeepgramProvider(StreamingProvider):
    NAME = ProviderName.DEEPGRAM
    WS_URL = "wss://api.deepgram.com/v1/listen"
    MODEL = "nova-3"

    @cached_property
    def ws_url(self) -> str:
        formatted = "true" if self.settings.text_formatted else "false"
        params = {
            "model": self.MODEL,
            "language": self.language or "multi",
            "punctuate": formatted,
            "smart_format": formatted,
            "interim_results": "true",
            "endpointing": "100",
            "encoding": "linear16",
            "sample_rate": "16000",
            "channels": "1",
        }
        return self.WS_URL + "?" + urllib.parse.urlencode(params)

    @cached_property
    def ws_headers(self) -> dict[str, str]:
        return {"Authorization": f"Token {self.settings.api_key}"}

    async def send_end_of_stream(self, ws):
        await ws.send(json.dumps({"type": "CloseStream"}))

    def request_id_of(self, event: dict) -> str | None:
        metadata = event.get("metadata")
        return event.get("request_id") or (metadata.get("request_id") if isinstance(metadata, dict) else None)

    def parse_event(self, event: dict) -> tuple[str, bool] | None:
        match event.get("type"):
            case "Results":
                alternatives = event.get("channel", {}).get("alternatives", []) or [{}]
                transcript = (alternatives[0].get("transcript") or "").strip()
                if not transcript:
                    return None
                is_final = bool(event.get("is_final")) or bool(event.get("speech_final"))
                return transcript, is_final
            case "Error":
                warn(self.get_name(), f"backend error: {event.get('description') or event}")
        return None


class CartesiaProvider(StreamingProvider):
    NAME = ProviderName.CARTESIA
    WS_URL = "wss://api.cartesia.ai/stt/websocket"
    MODEL = "ink-whisper"
    API_VERSION = "2025-04-16"

    @cached_property
    def ws_url(self) -> str:
        params = {
            "model": self.MODEL,
            "encoding": "pcm_s16le",
            "sample_rate": "16000",
            "api_key": self.settings.api_key,
            "cartesia_version": self.API_VERSION,
        }
        if self.language:
            params["language"] = self.language
        return self.WS_URL + "?" + urllib.parse.urlencode(params)

    def encode_frame(self, samples: np.ndarray, sample_rate: int) -> bytes:
        return super().encode_frame(soft_limit(samples), sample_rate)

    async def send_end_of_stream(self, ws):
        await ws.send("finalize")
        await ws.send("done")

    def parse_event(self, event: dict) -> tuple[str, bool] | None:
        match event.get("type"):
            case "transcript":
                text = str(event.get("text") or "").strip()
                if not text:
                    return None
                return text, bool(event.get("is_final"))
            case "error":
                warn(self.get_name(), f"backend error: {event.get('message') or event}")
        return None


# Factory

BATCH_TRANSCRIBERS: dict[ProviderName, type[SegmentTranscriber]] = {
    ProviderName.GROQ: GroqTranscriber,
    ProviderName.GEMINI: GeminiTranscriber,
    ProviderName.MISTRAL: MistralTranscriber,
    ProviderName.SAMBANOVA: SambaNovaTranscriber,
    ProviderName.FIREWORKS: FireworksTranscriber,
}

STREAMING_PROVIDERS: dict[ProviderName, type[StreamingProvider]] = {
    ProviderName.DEEPGRAM: DeepgramProvider,
    ProviderName.CARTESIA: CartesiaProvider,
}


def parse_provider_name(name: str) -> ProviderName:
    try:
        return ProviderName((name or "").strip().lower())
    except ValueError:
        raise UnknownProviderError(f'Unknown transcription provider "{name}"') from None


def available_providers() -> list[str]:
    return [provider.value for provider in ProviderName]


def is_streaming_provider(name: str) -> bool:
    return parse_provider_name(name) in STREAMING_PROVIDERS


def create_provider(
    name: str,
    settings: ProviderSettings,
    on_transcript: TranscriptSink,
    on_interim: InterimSink | None = None,
) -> BaseProvider:
    provider_name = parse_provider_name(name)
    if streaming_class := STREAMING_PROVIDERS.get(provider_name):
        return streaming_class(settings, on_transcript, on_interim)
    transcriber = BATCH_TRANSCRIBERS[provider_name](settings)
    return BatchProvider(settings, on_transcript, transcriber, on_interim=on_interim)
