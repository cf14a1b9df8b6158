from mindscript.contracts import VoiceProvider
from mindscript.gateway.config import Settings
from mindscript.workers.adapters.base import RenderAdapter
from mindscript.workers.adapters.numpy_render import NumpyRenderAdapter
from mindscript.workers.adapters.tts import (
    ElevenLabsTTSProvider,
    OpenAITTSProvider,
    TTSProvider,
    UploadedVoiceProvider,
)

__all__ = ["RenderAdapter", "NumpyRenderAdapter", "create_render_adapter"]


def create_render_adapter(settings: Settings) -> RenderAdapter:
    """Reference adapter with every voice provider that has credentials configured."""
    timeout = settings.tts_request_timeout_seconds
    providers: dict[VoiceProvider, TTSProvider] = {
        VoiceProvider.uploaded: UploadedVoiceProvider(settings.asset_base_urls, timeout)
    }
    if settings.openai_api_key:
        providers[VoiceProvider.openai] = OpenAITTSProvider(settings.openai_api_key, timeout)
    if settings.elevenlabs_api_key:
        providers[VoiceProvider.elevenlabs] = ElevenLabsTTSProvider(settings.elevenlabs_api_key, timeout)
    return NumpyRenderAdapter(providers, settings.asset_base_urls, timeout)
