from __future__ import annotations

import io
import wave
from typing import NamedTuple

import numpy as np

TARGET_SAMPLE_RATE = 16_000
SILENCE_FLOOR_DB = -120.0


class AudioFrame(NamedTuple):
    samples: np.ndarray
    sample_rate: int

    @property
    def duration_ms(self) -> float:
        return len(self.samples) * 1000 / self.sample_rate


def mix_to_mono(block) -> np.ndarray:
    data = np.asarray(block, dtype=np.float32)
    if data.ndim == 1:
        return data
    if data.shape[1] == 1:
        return data[:, 0].copy()
    return data.mean(axis=1, dtype=np.float32)


def rms(samples: np.ndarray) -> float:
    if len(samples) == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))


def dbfs_from_rms(value: float) -> float:
    if value <= 1e-9:
        return SILENCE_FLOOR_DB
    return 20.0 * float(np.log10(value))


def downsample_to_16k_int16(samples: np.ndarray, sample_rate: int) -> np.ndarray:
    """Decimate float samples to 16 kHz signed 16-bit by averaging each output window."""
    data = np.asarray(samples, dtype=np.float32)
    ratio = sample_rate / TARGET_SAMPLE_RATE
    new_length = int(np.floor(len(data) / ratio))
    if new_length <= 0:
        return np.zeros(0, dtype=np.int16)
    indexes = np.arange(new_length + 1, dtype=np.float64) * ratio
    bounds = np.minimum(np.floor(indexes).astype(np.int64), len(data))
    starts, ends = bounds[:-1], bounds[1:]
    cumulative = np.concatenate(([0.0], np.cumsum(data, dtype=np.float64)))
    counts = ends - starts
    sums = cumulative[ends] - cumulative[starts]
    # upsampling windows can be empty: reuse the nearest input sample
    nearest = data[np.minimum(starts, len(data) - 1)]
    averaged = np.where(counts > 0, sums / np.maximum(counts, 1), nearest)
    clipped = np.clip(averaged, -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    return scaled.astype(np.int16)


def encode_wav_16k_mono(pcm: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(TARGET_SAMPLE_RATE)
        wav.writeframes(np.asarray(pcm, dtype="<i2").tobytes())
    return buffer.getvalue()


class Segmenter:
    """Energy-based cutter turning a continuous stream into utterance-sized 16 kHz clips.

    Every pushed frame is measured, resampled and appended to the pending buffer.
    The pending region is cut when silence lasted ``silence_timeout_ms`` or when
    it reached ``max_duration_ms``. A cut region is returned only when it holds
    speech: voiced frames were seen, and both the region and its voiced part
    last at least ``min_duration_ms``. Otherwise the region is dropped. Either
    way the buffer restarts empty, so memory is bounded by one max-duration window.
    """

    SILENCE_THRESHOLD_DB = -30.0
    SILENCE_TIMEOUT_MS = 700
    MAX_DURATION_MS = 15_000
    MIN_DURATION_MS = 200

    def __init__(
        self,
        silence_threshold_db: float = SILENCE_THRESHOLD_DB,
        silence_timeout_ms: float = SILENCE_TIMEOUT_MS,
        max_duration_ms: float = MAX_DURATION_MS,
        min_duration_ms: float = MIN_DURATION_MS,
    ):
        self.silence_threshold_db = silence_threshold_db
        self.silence_timeout_ms = silence_timeout_ms
        self.max_duration_ms = max_duration_ms
        self.min_duration_ms = min_duration_ms
        self._chunks: list[np.ndarray] = []
        self._pending_samples = 0
        self._speech_samples = 0
        self.had_speech = False
        self.silence_ms = 0.0

    @property
    def pending_ms(self) -> float:
        return self._pending_samples * 1000 / TARGET_SAMPLE_RATE

    @property
    def speech_ms(self) -> float:
        return self._speech_samples * 1000 / TARGET_SAMPLE_RATE

    @property
    def is_ready(self) -> bool:
        return self.had_speech and self.pending_ms >= self.min_duration_ms and self.speech_ms >= self.min_duration_ms

    def push(self, samples: np.ndarray, sample_rate: int) -> np.ndarray | None:
        level = dbfs_from_rms(rms(samples))
        frame_ms = len(samples) * 1000 / sample_rate
        pcm = downsample_to_16k_int16(samples, sample_rate)

        if level < self.silence_threshold_db:
            self.silence_ms += frame_ms
        else:
            self.silence_ms = 0.0
            self.had_speech = True
            self._speech_samples += len(pcm)

        self._chunks.append(pcm)
        self._pending_samples += len(pcm)

        if self.silence_ms >= self.silence_timeout_ms or self.pending_ms >= self.max_duration_ms:
            return self._cut()
        return None

    def flush(self) -> np.ndarray | None:
        return self._cut()

    def _cut(self) -> np.ndarray | None:
        ready = self.is_ready
        region = np.concatenate(self._chunks) if (ready and self._chunks) else None
        self.reset()
        return region

    def reset(self) -> None:
        self._chunks = []
        self._pending_samples = 0
        self._speech_samples = 0
        self.had_speech = False
        self.silence_ms = 0.0

