from abc import ABC, abstractmethod

import numpy as np

from mindscript.contracts import (
    BackgroundLayer,
    BinauralLayer,
    FadeSettings,
    OutputOptions,
    SafetySettings,
    SolfeggioLayer,
)

SAMPLE_RATE = 44_100
CHANNELS = 2

# Audio is float32 in [-1, 1], shaped (frames, CHANNELS), at SAMPLE_RATE.


class RenderAdapter(ABC):
    """Audio operations the render pipeline orchestrates."""

    @abstractmethod
    async def initialize(self) -> None: ...

    @abstractmethod
    async def synthesize_voice(self, script: str, voice_ref: str) -> np.ndarray:
        """Speak `script` with the voice `provider:code`."""

    @abstractmethod
    async def fetch_background(self, layer: BackgroundLayer) -> np.ndarray: ...

    @abstractmethod
    async def generate_solfeggio(self, layer: SolfeggioLayer, duration_s: float) -> np.ndarray: ...

    @abstractmethod
    async def generate_binaural(self, layer: BinauralLayer, duration_s: float) -> np.ndarray: ...

    @abstractmethod
    async def arrange_voice(
        self, voice: np.ndarray, duration_s: float, loop_mode: str, pause_s: float, interval_s: float | None
    ) -> np.ndarray:
        """Lay the spoken script out over the track: back to back with pauses, or on a fixed interval."""

    @abstractmethod
    async def mix(self, tracks: dict[str, np.ndarray], gains_db: dict[str, float], duration_s: float) -> np.ndarray:
        """Sum already laid-out tracks keyed by layer name, each scaled by its gain."""

    @abstractmethod
    async def normalize(self, audio: np.ndarray, safety: SafetySettings) -> np.ndarray: ...

    @abstractmethod
    async def encode(self, audio: np.ndarray, output: OutputOptions, fade: FadeSettings) -> bytes: ...

    async def close(self) -> None:
        return None
