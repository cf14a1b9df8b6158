"""Rendered audio storage for local filesystem and S3-compatible buckets (R2, MinIO, S3)."""

import shutil
from abc import ABC, abstractmethod
from pathlib import Path

import aioboto3
from botocore.client import Config
from loguru import logger

from mindscript.contracts import Visibility
from mindscript.gateway.config import AudioStorages, Settings

CONTENT_TYPES = {"mp3": "audio/mpeg", "wav": "audio/wav"}


def render_key(user_id: str, job_id: str, fmt: str) -> str:
    return f"renders/{user_id}/{job_id}.{fmt}"


class AudioStorage(ABC):
    """Abstract interface for rendered audio backends."""

    @abstractmethod
    async def store(self, key: str, data: bytes, content_type: str, visibility: Visibility = "private") -> str:
        """Store audio and return the URL to record on the job."""

    @abstractmethod
    async def exists(self, key: str, visibility: Visibility = "private") -> bool: ...

    @abstractmethod
    async def delete(self, key: str, visibility: Visibility = "private") -> None: ...


class LocalAudioStorage(AudioStorage):
    """Store renders on local filesystem, one directory per visibility."""

    def __init__(self, base_path: Path, public_url: str = "/renders"):
        self.base_path = base_path
        self.public_url = public_url.rstrip("/")

    def _path(self, key: str, visibility: Visibility) -> Path:
        return self.base_path / visibility / key

    async def store(self, key: str, data: bytes, content_type: str, visibility: Visibility = "private") -> str:
        path = self._path(key, visibility)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return f"{self.public_url}/{visibility}/{key}"

    async def exists(self, key: str, visibility: Visibility = "private") -> bool:
        return self._path(key, visibility).exists()

    async def delete(self, key: str, visibility: Visibility = "private") -> None:
        path = self._path(key, visibility)
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)


class S3AudioStorage(AudioStorage):
    """Store renders in an S3-compatible bucket pair: public renders are served from the CDN,
    private ones are only reachable through signed access."""

    def __init__(
        self,
        endpoint_url: str | None,
        access_key_id: str | None,
        secret_access_key: str | None,
        public_bucket: str,
        private_bucket: str,
        public_url: str,
    ):
        self.buckets: dict[str, str] = {"public": public_bucket, "private": private_bucket}
        self.public_url = public_url.rstrip("/")
        self._session = aioboto3.Session()
        self._client_config = {
            "endpoint_url": endpoint_url,
            "aws_access_key_id": access_key_id,
            "aws_secret_access_key": secret_access_key,
            "region_name": "auto",
            "config": Config(signature_version="s3v4"),
        }

    async def store(self, key: str, data: bytes, content_type: str, visibility: Visibility = "private") -> str:
        bucket = self.buckets[visibility]
        async with self._session.client("s3", **self._client_config) as s3:
            await s3.put_object(Bucket=bucket, Key=key, Body=data, ContentType=content_type)
        logger.debug(f"Uploaded {len(data)} bytes to {bucket}/{key}")
        if visibility == "public":
            return f"{self.public_url}/{key}"
        return f"s3://{bucket}/{key}"

    async def exists(self, key: str, visibility: Visibility = "private") -> bool:
        async with self._session.client("s3", **self._client_config) as s3:
            response = await s3.list_objects_v2(Bucket=self.buckets[visibility], Prefix=key, MaxKeys=1)
            return response.get("KeyCount", 0) > 0

    async def delete(self, key: str, visibility: Visibility = "private") -> None:
        async with self._session.client("s3", **self._client_config) as s3:
            await s3.delete_object(Bucket=self.buckets[visibility], Key=key)


def get_audio_storage(settings: Settings) -> AudioStorage:
    match settings.audio_storage:
        case AudioStorages.LOCAL:
            return LocalAudioStorage(settings.audio_storage_path, settings.public_base_url)
        case AudioStorages.S3:
            return S3AudioStorage(
                endpoint_url=settings.s3_endpoint_url,
                access_key_id=settings.s3_access_key_id,
                secret_access_key=settings.s3_secret_access_key,
                public_bucket=settings.s3_public_bucket,
                private_bucket=settings.s3_private_bucket,
                public_url=settings.public_base_url,
            )
        case _:
            raise ValueError(f"Invalid audio storage {settings.audio_storage}")
