import copy
from typing import Any

import pytest
import pytest_asyncio

from mindscript.gateway.config import ProgressChannels, Settings
from mindscript.gateway.db import close_db, create_session_factory, prepare_database
from mindscript.gateway.job_store import JobStore, RetryPolicy
from mindscript.gateway.progress import InMemoryProgressChannel

BASE_PAYLOAD: dict[str, Any] = {
    "script": "Breathe in slowly. Let your shoulders drop.",
    "voice_ref": "openai:nova",
    "duration_min": 5,
    "layers": {
        "voice": {"enabled": True, "provider": "openai", "voice_code": "nova"},
        "background": {"enabled": True, "track_id": "rain", "track_url": "https://cdn.example.com/rain.mp3"},
        "solfeggio": {"enabled": True, "hz": 528},
        "binaural": {"enabled": False},
    },
}


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        db_drop_and_recreate=True,
        progress_channel=ProgressChannels.MEMORY,
        log_dir=tmp_path / "logs",
        audio_storage_path=tmp_path / "renders",
        retry_base_delay_seconds=0,
        admin_user_ids=["admin-user-123"],
        asset_base_urls=["https://cdn.example.com/"],
    )


@pytest.fixture
def channel() -> InMemoryProgressChannel:
    return InMemoryProgressChannel()


@pytest_asyncio.fixture
async def store(settings, channel) -> JobStore:
    await close_db()
    await prepare_database(settings)

    yield JobStore(
        create_session_factory(settings),
        channel,
        retry_policy=RetryPolicy.from_settings(settings),
        default_max_retries=settings.default_max_retries,
    )

    await close_db()


@pytest.fixture
def make_payload():
    """Valid render payload dict; keyword args toggle layers, e.g. make_payload(background=False)."""

    def _make(**layers: bool) -> dict[str, Any]:
        payload = copy.deepcopy(BASE_PAYLOAD)
        for name, enabled in layers.items():
            payload["layers"][name]["enabled"] = enabled
        return payload

    return _make
