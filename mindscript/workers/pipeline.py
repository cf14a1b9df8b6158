"""Render pipeline: runs one job's stages in order and reports progress between them.

    preparing -> tts -> mixing -> normalizing -> uploading

Before a stage starts its name is written to the job; once it finishes the
job's cumulative percentage moves to the stage's mark. Every write goes through
the store's ownership guard, so a cancelled or reassigned job stops at the next
stage boundary with LeaseLostError.
"""

import uuid

import numpy as np
import pydantic
from loguru import logger
from pydantic import BaseModel

from mindscript.contracts import AudioJobPayload, RenderStage
from mindscript.gateway.composition import LayerKind, enabled_layers, validate_layers
from mindscript.gateway.domain_models import RenderJob
from mindscript.gateway.exceptions import LayerCompositionError, LeaseLostError
from mindscript.gateway.job_store import JobStore, lease_owner
from mindscript.gateway.stages import STAGE_DONE_PERCENT, STAGE_MESSAGES
from mindscript.gateway.storage import CONTENT_TYPES, AudioStorage, render_key
from mindscript.workers.adapters.base import RenderAdapter
from mindscript.workers.errors import FatalRenderError


class RenderOutput(BaseModel):
    output_url: str
    format: str
    bitrate_kbps: int
    duration_s: float
    size_bytes: int
    layers: list[LayerKind]


class ProgressReporter:
    """Writes stage transitions for one claimed attempt, identified by its lease. Percentages only move forward."""

    def __init__(self, store: JobStore, job_id: uuid.UUID, lease: str):
        self._store = store
        self.job_id = job_id
        self.lease = lease
        self.worker_id = lease_owner(lease)
        self.progress = 0

    async def begin(self, stage: RenderStage, message: str | None = None) -> None:
        if await self._store.is_cancelled(self.job_id):
            raise LeaseLostError(self.job_id, self.worker_id)
        await self._store.report_progress(
            self.job_id, self.lease, self.progress, stage, message or STAGE_MESSAGES[stage]
        )

    async def finish(self, stage: RenderStage) -> None:
        self.progress = max(self.progress, STAGE_DONE_PERCENT[stage])
        await self._store.report_progress(self.job_id, self.lease, self.progress, stage)


class RenderPipeline:
    def __init__(self, adapter: RenderAdapter, storage: AudioStorage):
        self._adapter = adapter
        self._storage = storage

    async def execute(self, job: RenderJob, reporter: ProgressReporter) -> RenderOutput:
        payload = self._load_payload(job)
        layers = enabled_layers(payload.layers)
        duration_s = payload.duration_min * 60.0
        log = logger.bind(job_id=str(job.id), worker_id=reporter.worker_id)
        tracks: dict[str, np.ndarray] = {}

        await reporter.begin(RenderStage.preparing)
        voice_ref = payload.resolved_voice_ref
        if LayerKind.voice in layers and voice_ref is None:
            raise FatalRenderError("Voice layer is enabled but no voice is selected")
        if LayerKind.background in layers:
            tracks[LayerKind.background] = await self._adapter.fetch_background(payload.layers.background)
        await reporter.finish(RenderStage.preparing)

        await reporter.begin(RenderStage.tts)
        if LayerKind.voice in layers:
            assert voice_ref is not None
            speech = await self._adapter.synthesize_voice(payload.script, voice_ref)
            tracks[LayerKind.voice] = await self._adapter.arrange_voice(
                speech, duration_s, payload.loop_mode, payload.pause_sec, payload.interval_sec
            )
        await reporter.finish(RenderStage.tts)

        await reporter.begin(RenderStage.mixing)
        if LayerKind.solfeggio in layers:
            tracks[LayerKind.solfeggio] = await self._adapter.generate_solfeggio(payload.layers.solfeggio, duration_s)
        if LayerKind.binaural in layers:
            tracks[LayerKind.binaural] = await self._adapter.generate_binaural(payload.layers.binaural, duration_s)
        gains = payload.layers.gains
        mixed = await self._adapter.mix(
            tracks,
            {
                LayerKind.voice: gains.voice_db,
                LayerKind.background: gains.bg_db,
                LayerKind.solfeggio: gains.solfeggio_db,
                LayerKind.binaural: gains.binaural_db,
            },
            duration_s,
        )
        await reporter.finish(RenderStage.mixing)

        await reporter.begin(RenderStage.normalizing)
        normalized = await self._adapter.normalize(mixed, payload.safety)
        await reporter.finish(RenderStage.normalizing)

        await reporter.begin(RenderStage.uploading)
        output = payload.output
        data = await self._adapter.encode(normalized, output, payload.fade)
        url = await self._storage.store(
            render_key(job.user_id, str(job.id), output.format),
            data,
            CONTENT_TYPES[output.format],
            output.visibility,
        )
        await reporter.finish(RenderStage.uploading)

        log.info(f"Rendered {payload.duration_min}min {output.format} ({len(data)} bytes) with {', '.join(layers)}")
        return RenderOutput(
            output_url=url,
            format=output.format,
            bitrate_kbps=output.bitrate_kbps,
            duration_s=duration_s,
            size_bytes=len(data),
            layers=layers,
        )

    @staticmethod
    def _load_payload(job: RenderJob) -> AudioJobPayload:
        """Re-check the stored payload; it may predate the current rules."""
        try:
            payload = job.get_payload()
            validate_layers(payload.layers)
        except pydantic.ValidationError as e:
            raise FatalRenderError(f"Stored payload is invalid: {e.error_count()} error(s)") from e
        except LayerCompositionError as e:
            raise FatalRenderError(f"Invalid layer composition: {e.reason}") from e
        return payload
