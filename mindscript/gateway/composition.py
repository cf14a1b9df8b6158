"""Render request validation: payload schema errors, audio layer composition rules, asset locations."""

from collections.abc import Sequence
from enum import StrEnum, auto
from typing import Any
from urllib.parse import urlsplit

import pydantic

from mindscript.contracts import UPLOADED_VOICE_PREFIX, AudioJobPayload, AudioLayers, FieldError, VoiceProvider
from mindscript.gateway.exceptions import LayerCompositionError, PayloadValidationError

NO_LAYERS = "at least one audio layer must be enabled"
BACKGROUND_WITHOUT_VOICE = "background audio requires voice"
SOLFEGGIO_ALONE = "solfeggio tone cannot be used alone"
BINAURAL_ALONE = "binaural beat cannot be used alone"
ASSET_NOT_ALLOWED = "asset URL is not under an allowed base URL"


class LayerKind(StrEnum):
    voice = auto()
    background = auto()
    solfeggio = auto()
    binaural = auto()


def enabled_layers(layers: AudioLayers) -> list[LayerKind]:
    return [kind for kind in LayerKind if getattr(layers, kind.value).enabled]


def validate_layers(layers: AudioLayers) -> None:
    """Raise LayerCompositionError for the first rule the layer combination breaks.

    Rule order matters: a payload with only background enabled reports the
    voice dependency, not the tone rules.
    """
    voice = layers.voice.enabled
    background = layers.background.enabled
    solfeggio = layers.solfeggio.enabled
    binaural = layers.binaural.enabled

    if not (voice or background or solfeggio or binaural):
        raise LayerCompositionError(NO_LAYERS)
    if background and not voice:
        raise LayerCompositionError(BACKGROUND_WITHOUT_VOICE)
    if solfeggio and not (voice or background or binaural):
        raise LayerCompositionError(SOLFEGGIO_ALONE)
    if binaural and not (voice or background or solfeggio):
        raise LayerCompositionError(BINAURAL_ALONE)


def asset_url_allowed(url: str, allowed_bases: Sequence[str]) -> bool:
    """True when `url` has the scheme and host of an allowed base and lies under its path."""
    target = urlsplit(url)
    for base in allowed_bases:
        allowed = urlsplit(base)
        prefix = allowed.path.rstrip("/") + "/"
        if (target.scheme, target.netloc) == (allowed.scheme, allowed.netloc) and target.path.startswith(prefix):
            return True
    return False


def asset_locations(payload: AudioJobPayload) -> list[tuple[str, str]]:
    """(field path, URL) for every remote asset the payload points a worker at."""
    locations: list[tuple[str, str]] = []
    if payload.voice_ref and payload.voice_ref.startswith(UPLOADED_VOICE_PREFIX):
        locations.append(("voice_ref", payload.voice_ref.removeprefix(UPLOADED_VOICE_PREFIX)))
    voice = payload.layers.voice
    if voice.provider == VoiceProvider.uploaded and voice.voice_code:
        locations.append(("layers.voice.voice_code", voice.voice_code))
    if payload.layers.background.track_url:
        locations.append(("layers.background.track_url", payload.layers.background.track_url))
    return locations


def validate_asset_locations(payload: AudioJobPayload, allowed_bases: Sequence[str]) -> None:
    errors = [
        FieldError(loc=loc, msg=ASSET_NOT_ALLOWED, type="asset_not_allowed").model_dump()
        for loc, url in asset_locations(payload)
        if not asset_url_allowed(url, allowed_bases)
    ]
    if errors:
        raise PayloadValidationError(errors)


def parse_payload(
    data: dict[str, Any] | AudioJobPayload, allowed_asset_bases: Sequence[str] | None = None
) -> AudioJobPayload:
    """Validate a raw render request, its layer composition and, given an allow list, its asset URLs.

    Raises PayloadValidationError with one entry per invalid field, so callers
    can point at exactly which input is wrong.
    """
    if isinstance(data, AudioJobPayload):
        payload = data
    else:
        try:
            payload = AudioJobPayload.model_validate(data)
        except pydantic.ValidationError as e:
            raise PayloadValidationError(_field_errors(e)) from e

    validate_layers(payload.layers)
    if allowed_asset_bases is not None:
        validate_asset_locations(payload, allowed_asset_bases)
    return payload


def _field_errors(exc: pydantic.ValidationError) -> list[dict[str, str]]:
    return [
        FieldError(
            loc=".".join(str(part) for part in err["loc"]),
            msg=err["msg"],
            type=err["type"],
        ).model_dump()
        for err in exc.errors()
    ]
