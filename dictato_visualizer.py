from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
from rich.text import Text

from dictato_audio import AudioFrame
from dictato_console import debug

if TYPE_CHECKING:
    from dictato_capture import AudioCaptureManager


class AudioVisualizer:
    """Frequency-bucket level meter fed by the capture monitor slot.

    Purely cosmetic: ``process`` runs on the frame path and never raises.
    """

    NUM_BARS = 9
    DB_FLOOR = -60.0  # dB floor for absolute scaling (silence threshold)
    BAR_CHARS = " ▁▂▃▄▅▆▇█"

    def __init__(self, num_bars: int = NUM_BARS):
        self.num_bars = num_bars
        self.heights = np.zeros(num_bars)
        self.running = False
        self._capture: AudioCaptureManager | None = None

    def connect(self, capture: AudioCaptureManager) -> None:
        if self._capture is not None and self._capture is not capture:
            self._capture.set_monitor(None)
        self._capture = capture
        capture.set_monitor(self.process)

    def start(self) -> None:
        self.running = True

    def stop(self) -> None:
        self.running = False
        self.heights = np.zeros(self.num_bars)
        if self._capture is not None:
            self._capture.set_monitor(None)
            self._capture = None

    def process(self, frame: AudioFrame) -> None:
        if not self.running:
            return
        try:
            self._update(frame.samples)
        except Exception as exc:
            debug(f"[VISUALIZER] skipped frame: {exc}")

    def _update(self, samples: np.ndarray) -> None:
        if len(samples) < 2:
            return
        samples = np.nan_to_num(samples, nan=0.0, posinf=1.0, neginf=-1.0)
        windowed = samples * np.hanning(len(samples))
        fft = np.abs(np.fft.rfft(windowed)) / len(samples)
        n_fft = len(fft)
        freq_bins = np.logspace(np.log10(1), np.log10(max(2, n_fft - 1)), self.num_bars + 1).astype(int)
        freq_bins = np.clip(freq_bins, 0, n_fft - 1)
        new_heights = np.zeros(self.num_bars)
        for i in range(self.num_bars):
            start = freq_bins[i]
            end = min(max(start + 1, freq_bins[i + 1]), n_fft)
            if start < end:
                new_heights[i] = np.mean(fft[start:end])

        # absolute dB scale: 0.0 = silence, 1.0 = full scale
        with np.errstate(divide="ignore"):
            db_values = 20.0 * np.log10(np.maximum(new_heights, 1e-10))
        levels = np.clip((db_values - self.DB_FLOOR) / -self.DB_FLOOR, 0.0, 1.0)
        self.heights = 0.7 * self.heights + 0.3 * levels

    def render(self) -> Text:
        text = Text()
        last = len(self.BAR_CHARS) - 1
        for height in self.heights:
            index = int(round(float(height) * last))
            style = "green" if height < 0.6 else "yellow" if height < 0.85 else "red"
            text.append(self.BAR_CHARS[index], style=style)
        return text
