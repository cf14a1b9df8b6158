"""Reference render adapter: numpy DSP, soundfile codecs, pyloudnorm loudness."""

import asyncio
import io
from collections.abc import Sequence

import httpx
import numpy as np
import pyloudnorm as pyln
import soundfile as sf
from loguru import logger

from mindscript.contracts import (
    BackgroundLayer,
    BinauralBand,
    BinauralLayer,
    FadeSettings,
    OutputOptions,
    SafetySettings,
    SolfeggioLayer,
    VoiceProvider,
)
from mindscript.workers.adapters.base import CHANNELS, SAMPLE_RATE, RenderAdapter
from mindscript.workers.adapters.tts import TTSProvider, fetch_asset
from mindscript.workers.errors import FatalRenderError

# beat frequency (Hz) per brainwave band when the layer gives none
BAND_BEAT_HZ = {
    BinauralBand.delta: 2.0,
    BinauralBand.theta: 6.0,
    BinauralBand.alpha: 10.0,
    BinauralBand.beta: 20.0,
    BinauralBand.gamma: 40.0,
}
DEFAULT_CARRIER_HZ = 200.0
DEFAULT_SOLFEGGIO_HZ = 528
LIMITER_CEILING_DB = -1.0
MIN_LOUDNESS_SECONDS = 0.4  # shortest block pyloudnorm can measure


def db_to_gain(db: float) -> float:
    return float(10 ** (db / 20))


def decode_audio(data: bytes) -> np.ndarray:
    """Decode any soundfile-readable bytes to float32 (frames, CHANNELS) at SAMPLE_RATE."""
    try:
        audio, sample_rate = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
    except (sf.LibsndfileError, TypeError) as e:
        raise FatalRenderError(f"Unreadable audio asset: {e}") from e
    if audio.shape[0] == 0:
        raise FatalRenderError("Audio asset is empty")

    if audio.shape[1] == 1:
        audio = np.repeat(audio, CHANNELS, axis=1)
    elif audio.shape[1] > CHANNELS:
        audio = audio[:, :CHANNELS]
    return resample(audio, sample_rate, SAMPLE_RATE)


def resample(audio: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    if source_rate == target_rate:
        return audio
    frames = int(round(audio.shape[0] * target_rate / source_rate))
    src = np.linspace(0.0, 1.0, num=audio.shape[0], endpoint=False)
    dst = np.linspace(0.0, 1.0, num=frames, endpoint=False)
    return np.stack([np.interp(dst, src, audio[:, ch]) for ch in range(audio.shape[1])], axis=1).astype(np.float32)


def fit_length(audio: np.ndarray, frames: int) -> np.ndarray:
    """Loop or trim `audio` to exactly `frames` frames."""
    if audio.shape[0] >= frames:
        return audio[:frames]
    reps = -(-frames // audio.shape[0])
    return np.tile(audio, (reps, 1))[:frames]


def oscillator(freq_hz: float, frames: int, wave: str = "sine") -> np.ndarray:
    phase = 2 * np.pi * freq_hz * np.arange(frames) / SAMPLE_RATE
    match wave:
        case "sine":
            signal = np.sin(phase)
        case "square":
            signal = np.sign(np.sin(phase))
        case "triangle":
            signal = 2 / np.pi * np.arcsin(np.sin(phase))
        case _:
            raise FatalRenderError(f"Unsupported waveform {wave!r}")
    return signal.astype(np.float32)


class NumpyRenderAdapter(RenderAdapter):
    def __init__(
        self,
        providers: dict[VoiceProvider, TTSProvider],
        asset_base_urls: Sequence[str] = (),
        timeout: float = 60.0,
    ):
        self._providers = providers
        self._asset_base_urls = list(asset_base_urls)
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def initialize(self) -> None:
        self._client = httpx.AsyncClient(timeout=self._timeout)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        for provider in self._providers.values():
            await provider.close()

    async def synthesize_voice(self, script: str, voice_ref: str) -> np.ndarray:
        provider_name, _, voice = voice_ref.partition(":")
        try:
            provider = self._providers[VoiceProvider(provider_name)]
        except (ValueError, KeyError) as e:
            raise FatalRenderError(f"Voice provider {provider_name!r} is not available") from e
        if not voice:
            raise FatalRenderError(f"Voice reference {voice_ref!r} names no voice")

        data = await provider.synthesize(script, voice)
        return await asyncio.to_thread(decode_audio, data)

    async def fetch_background(self, layer: BackgroundLayer) -> np.ndarray:
        if not layer.track_url:
            raise FatalRenderError(f"Background track {layer.track_id!r} has no resolvable URL")
        if self._client is None:
            raise RuntimeError("Adapter not initialized")
        data = await fetch_asset(self._client, layer.track_url, self._asset_base_urls)
        return await asyncio.to_thread(decode_audio, data)

    async def generate_solfeggio(self, layer: SolfeggioLayer, duration_s: float) -> np.ndarray:
        return await asyncio.to_thread(self._solfeggio, layer, duration_s)

    @staticmethod
    def _solfeggio(layer: SolfeggioLayer, duration_s: float) -> np.ndarray:
        frames = int(duration_s * SAMPLE_RATE)
        tone = oscillator(float(layer.hz or DEFAULT_SOLFEGGIO_HZ), frames, layer.wave)
        return np.repeat(tone[:, np.newaxis], CHANNELS, axis=1)

    async def generate_binaural(self, layer: BinauralLayer, duration_s: float) -> np.ndarray:
        return await asyncio.to_thread(self._binaural, layer, duration_s)

    @staticmethod
    def _binaural(layer: BinauralLayer, duration_s: float) -> np.ndarray:
        frames = int(duration_s * SAMPLE_RATE)
        carrier = layer.carrier_hz or DEFAULT_CARRIER_HZ
        beat = layer.beat_hz or BAND_BEAT_HZ[layer.band or BinauralBand.alpha]
        left = oscillator(carrier, frames)
        right = oscillator(carrier + beat, frames)
        return np.stack([left, right], axis=1)

    async def arrange_voice(
        self, voice: np.ndarray, duration_s: float, loop_mode: str, pause_s: float, interval_s: float | None
    ) -> np.ndarray:
        return await asyncio.to_thread(self._arrange_voice, voice, duration_s, loop_mode, pause_s, interval_s)

    @staticmethod
    def _arrange_voice(
        voice: np.ndarray, duration_s: float, loop_mode: str, pause_s: float, interval_s: float | None
    ) -> np.ndarray:
        frames = int(duration_s * SAMPLE_RATE)
        track = np.zeros((frames, CHANNELS), dtype=np.float32)
        if loop_mode == "interval" and interval_s:
            step = int(interval_s * SAMPLE_RATE)
        else:
            step = voice.shape[0] + int(pause_s * SAMPLE_RATE)
        step = max(step, 1)

        for start in range(0, frames, step):
            chunk = voice[: frames - start]
            track[start : start + chunk.shape[0]] += chunk
        return track

    async def mix(self, tracks: dict[str, np.ndarray], gains_db: dict[str, float], duration_s: float) -> np.ndarray:
        return await asyncio.to_thread(self._mix, tracks, gains_db, duration_s)

    @staticmethod
    def _mix(tracks: dict[str, np.ndarray], gains_db: dict[str, float], duration_s: float) -> np.ndarray:
        frames = int(duration_s * SAMPLE_RATE)
        mixed = np.zeros((frames, CHANNELS), dtype=np.float32)
        for name, track in tracks.items():
            mixed += fit_length(track, frames) * db_to_gain(gains_db.get(name, 0.0))
        return mixed

    async def normalize(self, audio: np.ndarray, safety: SafetySettings) -> np.ndarray:
        return await asyncio.to_thread(self._normalize, audio, safety)

    @staticmethod
    def _normalize(audio: np.ndarray, safety: SafetySettings) -> np.ndarray:
        if audio.shape[0] >= MIN_LOUDNESS_SECONDS * SAMPLE_RATE:
            loudness = pyln.Meter(SAMPLE_RATE).integrated_loudness(audio)
            if np.isfinite(loudness):
                audio = pyln.normalize.loudness(audio, loudness, safety.target_lufs).astype(np.float32)
            else:
                logger.warning("Render is silent, skipping loudness normalization")

        if safety.limiter:
            ceiling = db_to_gain(LIMITER_CEILING_DB)
            audio = np.clip(audio, -ceiling, ceiling)
        return audio

    async def encode(self, audio: np.ndarray, output: OutputOptions, fade: FadeSettings) -> bytes:
        return await asyncio.to_thread(self._encode, audio, output, fade)

    @staticmethod
    def _encode(audio: np.ndarray, output: OutputOptions, fade: FadeSettings) -> bytes:
        audio = audio.copy()
        fade_in = min(int(fade.in_ms * SAMPLE_RATE / 1000), audio.shape[0])
        fade_out = min(int(fade.out_ms * SAMPLE_RATE / 1000), audio.shape[0])
        if fade_in:
            audio[:fade_in] *= np.linspace(0.0, 1.0, fade_in, dtype=np.float32)[:, np.newaxis]
        if fade_out:
            audio[-fade_out:] *= np.linspace(1.0, 0.0, fade_out, dtype=np.float32)[:, np.newaxis]

        buffer = io.BytesIO()
        if output.format == "wav":
            sf.write(buffer, audio, SAMPLE_RATE, format="WAV", subtype="PCM_16")
        else:
            sf.write(buffer, audio, SAMPLE_RATE, format="MP3", subtype="MPEG_LAYER_III")
        return buffer.getvalue()
