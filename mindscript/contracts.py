"""Contracts for render jobs: payload schema, queue enums, and progress channel messages."""

import uuid
from datetime import datetime
from enum import StrEnum, auto
from typing import Annotated, Final, Literal
from urllib.parse import urlsplit

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator

JOB_CHANNEL: Final[str] = "render:job:{job_id}"  # pubsub channel, one per job

PROGRESS_MIN: Final[int] = 0
PROGRESS_MAX: Final[int] = 100

LIST_LIMIT_MIN: Final[int] = 1
LIST_LIMIT_MAX: Final[int] = 50
LIST_LIMIT_DEFAULT: Final[int] = 20

SCRIPT_MAX_CHARS: Final[int] = 5000  # practical limit of the TTS providers
GAIN_MIN_DB: Final[float] = -30.0
GAIN_MAX_DB: Final[float] = 10.0


def get_job_channel(job_id: uuid.UUID | str) -> str:
    return JOB_CHANNEL.format(job_id=job_id)


class JobStatus(StrEnum):
    pending = auto()
    processing = auto()
    completed = auto()
    failed = auto()
    cancelled = auto()


TERMINAL_STATUSES: Final[frozenset[JobStatus]] = frozenset({JobStatus.completed, JobStatus.failed, JobStatus.cancelled})


class JobPriority(StrEnum):
    low = auto()
    normal = auto()
    high = auto()
    urgent = auto()


# claim order: higher rank first
PRIORITY_RANK: Final[dict[JobPriority, int]] = {
    JobPriority.low: 0,
    JobPriority.normal: 1,
    JobPriority.high: 2,
    JobPriority.urgent: 3,
}


class JobType(StrEnum):
    render = auto()
    preview = auto()
    export = auto()


class RenderStage(StrEnum):
    """User-facing pipeline stages, in execution order."""

    preparing = auto()
    tts = auto()
    mixing = auto()
    normalizing = auto()
    uploading = auto()
    completed = auto()


class VoiceProvider(StrEnum):
    openai = auto()
    elevenlabs = auto()
    uploaded = auto()


class BinauralBand(StrEnum):
    delta = auto()
    theta = auto()
    alpha = auto()
    beta = auto()
    gamma = auto()


SolfeggioHz = Literal[174, 285, 396, 417, 528, 639, 741, 852, 963]
DurationMinutes = Literal[5, 10, 15]  # presets supported by the mixer
LoopMode = Literal["repeat", "interval"]
OutputFormat = Literal["mp3", "wav"]
QualityTier = Literal["low", "standard", "high"]
Visibility = Literal["private", "public"]
ToneWave = Literal["sine", "triangle", "square"]

QUALITY_BITRATE_KBPS: Final[dict[str, int]] = {"low": 96, "standard": 192, "high": 320}

UPLOADED_VOICE_PREFIX: Final[str] = "uploaded:"


def require_http_url(value: str) -> str:
    """Assets are fetched over HTTP(S) only; filesystem paths never reach a worker."""
    if urlsplit(value).scheme not in ("http", "https"):
        raise ValueError("must be an http(s) URL")
    return value


AssetUrl = Annotated[str, AfterValidator(require_http_url)]


class VoiceLayer(BaseModel):
    enabled: bool
    provider: VoiceProvider | None = None
    voice_code: str | None = Field(default=None, max_length=200)  # URL of the recording for uploaded voices

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _uploaded_voice_is_url(self) -> "VoiceLayer":
        if self.provider == VoiceProvider.uploaded and self.voice_code:
            require_http_url(self.voice_code)
        return self


class BackgroundLayer(BaseModel):
    enabled: bool
    track_id: str | None = None
    track_url: AssetUrl | None = None

    model_config = ConfigDict(frozen=True)


class SolfeggioLayer(BaseModel):
    enabled: bool
    hz: SolfeggioHz | None = None
    wave: ToneWave = "sine"

    model_config = ConfigDict(frozen=True)


class BinauralLayer(BaseModel):
    enabled: bool
    band: BinauralBand | None = None
    beat_hz: float | None = Field(default=None, ge=0.1, le=100)
    carrier_hz: float | None = Field(default=None, ge=50, le=1000)

    model_config = ConfigDict(frozen=True)


class LayerGains(BaseModel):
    """Per-layer loudness in dB."""

    voice_db: float = Field(default=-1, ge=GAIN_MIN_DB, le=GAIN_MAX_DB)
    bg_db: float = Field(default=-10, ge=GAIN_MIN_DB, le=GAIN_MAX_DB)
    solfeggio_db: float = Field(default=-16, ge=GAIN_MIN_DB, le=GAIN_MAX_DB)
    binaural_db: float = Field(default=-18, ge=GAIN_MIN_DB, le=GAIN_MAX_DB)

    model_config = ConfigDict(frozen=True)


class AudioLayers(BaseModel):
    voice: VoiceLayer
    background: BackgroundLayer
    solfeggio: SolfeggioLayer
    binaural: BinauralLayer
    gains: LayerGains = Field(default_factory=LayerGains)

    model_config = ConfigDict(frozen=True)


class OutputOptions(BaseModel):
    format: OutputFormat = "mp3"
    quality: QualityTier = "standard"
    visibility: Visibility = "private"

    model_config = ConfigDict(frozen=True)

    @property
    def bitrate_kbps(self) -> int:
        return QUALITY_BITRATE_KBPS[self.quality]


class SafetySettings(BaseModel):
    limiter: bool = True
    target_lufs: float = Field(default=-16, ge=-30, le=-6)

    model_config = ConfigDict(frozen=True)


class FadeSettings(BaseModel):
    in_ms: int = Field(default=1000, ge=0, le=5000)
    out_ms: int = Field(default=1500, ge=0, le=5000)

    model_config = ConfigDict(frozen=True)


class AudioJobPayload(BaseModel):
    """Immutable description of one render request, stored verbatim on the job row."""

    job_type: JobType = JobType.render
    script: str = Field(min_length=1, max_length=SCRIPT_MAX_CHARS)
    voice_ref: str | None = Field(default=None, max_length=200)  # "provider:code"
    duration_min: DurationMinutes
    pause_sec: int = Field(default=3, ge=1, le=30)
    loop_mode: LoopMode = "repeat"
    interval_sec: int | None = Field(default=None, ge=30, le=300)
    layers: AudioLayers
    output: OutputOptions = Field(default_factory=OutputOptions)
    safety: SafetySettings = Field(default_factory=SafetySettings)
    fade: FadeSettings = Field(default_factory=FadeSettings)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("voice_ref")
    @classmethod
    def _uploaded_ref_is_url(cls, value: str | None) -> str | None:
        if value and value.startswith(UPLOADED_VOICE_PREFIX):
            require_http_url(value.removeprefix(UPLOADED_VOICE_PREFIX))
        return value

    @property
    def resolved_voice_ref(self) -> str | None:
        if self.voice_ref:
            return self.voice_ref
        voice = self.layers.voice
        if voice.provider and voice.voice_code:
            return f"{voice.provider}:{voice.voice_code}"
        return None


class FieldError(BaseModel):
    loc: str  # dotted path, e.g. "layers.gains.voice_db"
    msg: str
    type: str


# Progress channel messages: Store → subscribers


class JobUpdate(BaseModel):
    """Snapshot of a job after one applied write. `version` orders frames per job."""

    type: Literal["job_update"] = "job_update"
    job_id: uuid.UUID
    version: int
    status: JobStatus
    progress: int = Field(ge=PROGRESS_MIN, le=PROGRESS_MAX)
    stage: RenderStage | None = None
    progress_message: str | None = None
    retry_count: int = 0
    error_message: str | None = None
    output_url: str | None = None
    updated_at: datetime

    model_config = ConfigDict(frozen=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class RenderProgress(BaseModel):
    """Builder UI view of a job: where it is, in words and percent."""

    job_id: uuid.UUID
    status: JobStatus
    percentage: int = Field(ge=PROGRESS_MIN, le=PROGRESS_MAX)
    stage: RenderStage
    message: str
    estimated_time_remaining: int | None = None  # seconds
    error: str | None = None
    output_url: str | None = None

    model_config = ConfigDict(frozen=True)
