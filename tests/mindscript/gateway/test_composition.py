"""Layer composition rules and payload field errors."""

import pytest

from mindscript.contracts import AudioLayers
from mindscript.gateway.composition import (
    BACKGROUND_WITHOUT_VOICE,
    BINAURAL_ALONE,
    NO_LAYERS,
    SOLFEGGIO_ALONE,
    LayerKind,
    asset_url_allowed,
    enabled_layers,
    parse_payload,
    validate_layers,
)
from mindscript.gateway.exceptions import LayerCompositionError, PayloadValidationError


def _layers(voice=False, background=False, solfeggio=False, binaural=False) -> AudioLayers:
    return AudioLayers.model_validate(
        {
            "voice": {"enabled": voice},
            "background": {"enabled": background},
            "solfeggio": {"enabled": solfeggio},
            "binaural": {"enabled": binaural},
        }
    )


class TestValidateLayers:
    @pytest.mark.parametrize(
        "flags, reason",
        [
            ({}, NO_LAYERS),
            ({"background": True}, BACKGROUND_WITHOUT_VOICE),
            ({"background": True, "solfeggio": True}, BACKGROUND_WITHOUT_VOICE),
            ({"solfeggio": True}, SOLFEGGIO_ALONE),
            ({"binaural": True}, BINAURAL_ALONE),
        ],
    )
    def test_rejected(self, flags, reason):
        with pytest.raises(LayerCompositionError) as exc_info:
            validate_layers(_layers(**flags))
        assert exc_info.value.reason == reason
        assert exc_info.value.errors == [{"loc": "layers", "msg": reason, "type": "layer_composition"}]

    @pytest.mark.parametrize(
        "flags",
        [
            {"voice": True},
            {"voice": True, "background": True},
            {"voice": True, "background": True, "solfeggio": True, "binaural": True},
            {"solfeggio": True, "binaural": True},
            {"voice": True, "binaural": True},
        ],
    )
    def test_accepted(self, flags):
        validate_layers(_layers(**flags))

    def test_enabled_layers_in_fixed_order(self):
        layers = _layers(binaural=True, voice=True)
        assert enabled_layers(layers) == [LayerKind.voice, LayerKind.binaural]


class TestParsePayload:
    def test_valid(self, make_payload):
        payload = parse_payload(make_payload())
        assert payload.duration_min == 5
        assert payload.output.bitrate_kbps == 192
        assert payload.resolved_voice_ref == "openai:nova"

    def test_field_level_errors(self, make_payload):
        data = make_payload()
        data["duration_min"] = 7
        data["layers"]["gains"] = {"voice_db": 25}

        with pytest.raises(PayloadValidationError) as exc_info:
            parse_payload(data)

        locs = {err["loc"] for err in exc_info.value.errors}
        assert "duration_min" in locs
        assert "layers.gains.voice_db" in locs
        assert exc_info.value.to_dict()["errors"] == exc_info.value.errors

    def test_empty_script(self, make_payload):
        data = make_payload()
        data["script"] = ""
        with pytest.raises(PayloadValidationError) as exc_info:
            parse_payload(data)
        assert [err["loc"] for err in exc_info.value.errors] == ["script"]

    def test_unknown_field_rejected(self, make_payload):
        data = make_payload()
        data["tempo"] = 90
        with pytest.raises(PayloadValidationError):
            parse_payload(data)

    def test_composition_checked_after_schema(self, make_payload):
        with pytest.raises(LayerCompositionError):
            parse_payload(make_payload(voice=False, solfeggio=False))

    def test_voice_ref_derived_from_layer(self, make_payload):
        data = make_payload()
        data.pop("voice_ref")
        data["layers"]["voice"] = {"enabled": True, "provider": "elevenlabs", "voice_code": "rachel"}
        assert parse_payload(data).resolved_voice_ref == "elevenlabs:rachel"


class TestAssetLocations:
    ALLOWED = ["https://cdn.example.com/tracks/"]

    @pytest.mark.parametrize(
        "url, allowed",
        [
            ("https://cdn.example.com/tracks/rain.mp3", True),
            ("https://cdn.example.com/tracks/nested/rain.mp3", True),
            ("http://cdn.example.com/tracks/rain.mp3", False),
            ("https://cdn.example.com/other/rain.mp3", False),
            ("https://cdn.example.com/tracks-private/rain.mp3", False),
            ("https://cdn.example.com.evil.io/tracks/rain.mp3", False),
            ("https://cdn.example.com@evil.io/tracks/rain.mp3", False),
            ("http://169.254.169.254/latest/meta-data/", False),
        ],
    )
    def test_asset_url_allowed(self, url, allowed):
        assert asset_url_allowed(url, self.ALLOWED) is allowed

    def test_empty_allow_list_rejects_everything(self):
        assert not asset_url_allowed("https://cdn.example.com/tracks/rain.mp3", [])

    @pytest.mark.parametrize("track_url", ["/etc/passwd", "file:///etc/passwd", "data/renders/other-user.mp3"])
    def test_filesystem_track_rejected_by_schema(self, make_payload, track_url):
        data = make_payload()
        data["layers"]["background"]["track_url"] = track_url

        with pytest.raises(PayloadValidationError) as exc_info:
            parse_payload(data)
        assert [e["loc"] for e in exc_info.value.errors] == ["layers.background.track_url"]

    def test_uploaded_voice_ref_must_be_url(self, make_payload):
        data = make_payload()
        data["voice_ref"] = "uploaded:/var/lib/secrets/voice.wav"

        with pytest.raises(PayloadValidationError) as exc_info:
            parse_payload(data)
        assert [e["loc"] for e in exc_info.value.errors] == ["voice_ref"]

    def test_uploaded_voice_layer_must_be_url(self, make_payload):
        data = make_payload()
        data.pop("voice_ref")
        data["layers"]["voice"] = {"enabled": True, "provider": "uploaded", "voice_code": "../voice.wav"}

        with pytest.raises(PayloadValidationError) as exc_info:
            parse_payload(data)
        assert [e["loc"] for e in exc_info.value.errors] == ["layers.voice"]

    def test_allow_list_checked_per_field(self, make_payload):
        data = make_payload()
        data["voice_ref"] = "uploaded:https://uploads.example.com/u/voice.wav"

        with pytest.raises(PayloadValidationError) as exc_info:
            parse_payload(data, self.ALLOWED)

        assert {e["loc"] for e in exc_info.value.errors} == {"voice_ref", "layers.background.track_url"}
        assert all(e["type"] == "asset_not_allowed" for e in exc_info.value.errors)

    def test_allowed_assets_pass(self, make_payload):
        data = make_payload()
        data["layers"]["background"]["track_url"] = "https://cdn.example.com/tracks/rain.mp3"

        payload = parse_payload(data, self.ALLOWED)

        assert payload.layers.background.track_url == "https://cdn.example.com/tracks/rain.mp3"

    def test_no_allow_list_skips_host_check(self, make_payload):
        assert parse_payload(make_payload()).layers.background.track_url == "https://cdn.example.com/rain.mp3"
