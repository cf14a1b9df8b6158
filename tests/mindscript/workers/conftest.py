from unittest.mock import AsyncMock

import numpy as np
import pytest

from mindscript.gateway.storage import LocalAudioStorage
from mindscript.workers.adapters.base import CHANNELS, SAMPLE_RATE, RenderAdapter
from mindscript.workers.pipeline import RenderPipeline


def _silence(seconds: float = 0.5) -> np.ndarray:
    return np.zeros((int(seconds * SAMPLE_RATE), CHANNELS), dtype=np.float32)


@pytest.fixture
def adapter() -> AsyncMock:
    """Adapter double: every operation succeeds with short silent buffers."""
    mock = AsyncMock(spec=RenderAdapter)
    mock.synthesize_voice.return_value = _silence()
    mock.fetch_background.return_value = _silence()
    mock.generate_solfeggio.return_value = _silence()
    mock.generate_binaural.return_value = _silence()
    mock.arrange_voice.return_value = _silence()
    mock.mix.return_value = _silence()
    mock.normalize.return_value = _silence()
    mock.encode.return_value = b"ID3-encoded-audio"
    return mock


@pytest.fixture
def storage(tmp_path) -> LocalAudioStorage:
    return LocalAudioStorage(tmp_path / "renders", "/renders")


@pytest.fixture
def pipeline(adapter, storage) -> RenderPipeline:
    return RenderPipeline(adapter, storage)
