"""Mapping between render stages, their progress percentages and the UI view of a job."""

from typing import Final

from mindscript.contracts import PROGRESS_MAX, JobStatus, RenderProgress, RenderStage
from mindscript.gateway.domain_models import RenderJob

# cumulative percentage reported once a stage has finished
STAGE_DONE_PERCENT: Final[dict[RenderStage, int]] = {
    RenderStage.preparing: 10,
    RenderStage.tts: 40,
    RenderStage.mixing: 65,
    RenderStage.normalizing: 80,
    RenderStage.uploading: 95,
    RenderStage.completed: PROGRESS_MAX,
}

STAGE_MESSAGES: Final[dict[RenderStage, str]] = {
    RenderStage.preparing: "Preparing render",
    RenderStage.tts: "Generating speech from text",
    RenderStage.mixing: "Mixing audio layers",
    RenderStage.normalizing: "Normalizing audio",
    RenderStage.uploading: "Uploading to storage",
    RenderStage.completed: "Track successfully rendered!",
}

# keyword -> stage for free-text stage strings written by older workers, first match wins
_LEGACY_KEYWORDS: Final[tuple[tuple[str, RenderStage], ...]] = (
    ("upload", RenderStage.uploading),
    ("normaliz", RenderStage.normalizing),
    ("optimiz", RenderStage.normalizing),
    ("loudness", RenderStage.normalizing),
    ("mix", RenderStage.mixing),
    ("solfeggio", RenderStage.mixing),
    ("binaural", RenderStage.mixing),
    ("tone", RenderStage.mixing),
    ("speech", RenderStage.tts),
    ("voice", RenderStage.tts),
    ("tts", RenderStage.tts),
    ("complete", RenderStage.completed),
)


def stage_from_message(message: str | None) -> RenderStage:
    """Best-effort stage for a legacy free-text progress string. Unknown text maps to preparing."""
    if not message:
        return RenderStage.preparing
    try:
        return RenderStage(message.strip().lower())
    except ValueError:
        pass
    text = message.lower()
    for keyword, stage in _LEGACY_KEYWORDS:
        if keyword in text:
            return stage
    return RenderStage.preparing


def _estimate_remaining(stage: RenderStage, percentage: int) -> int | None:
    match stage:
        case RenderStage.preparing:
            return 120
        case RenderStage.tts:
            return max(60, 180 - percentage * 3)
        case RenderStage.mixing:
            return max(30, 120 - percentage * 2)
        case RenderStage.normalizing:
            return max(15, 60 - percentage)
        case RenderStage.uploading:
            return max(5, 30 - (percentage - 80))
        case _:
            return 0


def render_progress(job: RenderJob) -> RenderProgress:
    match job.status:
        case JobStatus.pending:
            stage = RenderStage.preparing
            message = job.progress_message if job.retry_count else "Waiting for a render worker"
            return RenderProgress(
                job_id=job.id,
                status=job.status,
                percentage=job.progress,
                stage=stage,
                message=message or STAGE_MESSAGES[stage],
                estimated_time_remaining=_estimate_remaining(stage, job.progress),
            )
        case JobStatus.processing:
            stage = job.stage or stage_from_message(job.progress_message)
            return RenderProgress(
                job_id=job.id,
                status=job.status,
                percentage=job.progress,
                stage=stage,
                message=job.progress_message or STAGE_MESSAGES[stage],
                estimated_time_remaining=_estimate_remaining(stage, job.progress),
            )
        case JobStatus.completed:
            return RenderProgress(
                job_id=job.id,
                status=job.status,
                percentage=PROGRESS_MAX,
                stage=RenderStage.completed,
                message=STAGE_MESSAGES[RenderStage.completed],
                estimated_time_remaining=0,
                output_url=job.output_url,
            )
        case _:
            error = job.error_message or ("Render cancelled" if job.status == JobStatus.cancelled else "Render failed")
            return RenderProgress(
                job_id=job.id,
                status=job.status,
                percentage=job.progress,
                stage=job.stage or RenderStage.preparing,
                message=error,
                error=error,
            )
