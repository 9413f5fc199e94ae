"""
Output storage for rendered reports.

Artifacts are written through a ``StorageBackend``; the shipped backend keeps
them on the local filesystem. Downloads are granted only for completed jobs
whose artifact has not expired.
"""

import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

import aiofiles
import aiofiles.os

from ..core.config import StorageConfig
from ..core.exceptions import ConfigurationError, ReportExpiredError, ReportNotFoundError
from ..models.common import utcnow, isoformat
from ..models.job import ReportJob, JobStatus, StorageDescriptor
from ..reporting.renderers import Renderer, get_renderer
from ..utils.logger import get_logger


_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")

CHUNK_SIZE = 64 * 1024


def build_filename(job: ReportJob, extension: str) -> str:
    """Requested filename (made safe, extension appended) or ``<reportType>-<id>.<ext>``."""
    if job.output.filename:
        name = _UNSAFE_FILENAME.sub("_", os.path.basename(job.output.filename)).strip("._") or job.id
        if not name.lower().endswith(f".{extension}"):
            name = f"{name}.{extension}"
        return name
    return f"{job.report_type}-{job.id}.{extension}"


class StorageBackend(ABC):
    """Physical artifact store."""

    provider: str = ""

    @abstractmethod
    async def save(self, job_id: str, filename: str, content: bytes, expires_at: datetime) -> StorageDescriptor:
        """Persist an artifact and describe where it lives."""

    @abstractmethod
    def open(self, descriptor: StorageDescriptor, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Stream an artifact's bytes."""

    @abstractmethod
    async def size(self, descriptor: StorageDescriptor) -> Optional[int]:
        """Size in bytes, or None if the artifact is missing."""

    @abstractmethod
    async def delete(self, descriptor: StorageDescriptor) -> bool:
        """Remove an artifact; returns False if it was already gone."""


class LocalStorageBackend(StorageBackend):
    """Stores artifacts under ``base_dir/<job_id>/<filename>``."""

    provider = "local"

    def __init__(self, base_dir: str, base_url: Optional[str] = None):
        self.base_dir = Path(base_dir)
        self.base_url = base_url.rstrip("/") if base_url else None

    async def save(self, job_id: str, filename: str, content: bytes, expires_at: datetime) -> StorageDescriptor:
        directory = self.base_dir / job_id
        await aiofiles.os.makedirs(directory, exist_ok=True)
        path = directory / filename
        async with aiofiles.open(path, "wb") as handle:
            await handle.write(content)

        key = f"{job_id}/{filename}"
        return StorageDescriptor(
            provider=self.provider,
            path=str(path),
            key=key,
            url=f"{self.base_url}/{key}" if self.base_url else None,
            expires_at=expires_at,
        )

    async def open(self, descriptor: StorageDescriptor, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        async with aiofiles.open(descriptor.path, "rb") as handle:
            while True:
                chunk = await handle.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    async def size(self, descriptor: StorageDescriptor) -> Optional[int]:
        try:
            stat = await aiofiles.os.stat(descriptor.path)
        except FileNotFoundError:
            return None
        return stat.st_size

    async def delete(self, descriptor: StorageDescriptor) -> bool:
        try:
            await aiofiles.os.remove(descriptor.path)
        except FileNotFoundError:
            return False
        try:
            await aiofiles.os.rmdir(os.path.dirname(descriptor.path))
        except OSError:
            pass
        return True


@dataclass
class DownloadHandle:
    """A granted download."""

    job_id: str
    filename: str
    content_type: str
    size: Optional[int]
    descriptor: StorageDescriptor
    backend: StorageBackend

    def iter_chunks(self, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        return self.backend.open(self.descriptor, chunk_size)

    async def read(self) -> bytes:
        parts = [chunk async for chunk in self.iter_chunks()]
        return b"".join(parts)


class OutputStorageManager:
    """Persists artifacts, grants time-bounded downloads and purges expired output."""

    def __init__(
        self,
        config: Optional[StorageConfig] = None,
        backend: Optional[StorageBackend] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or StorageConfig()
        self.clock = clock
        self.retention = timedelta(hours=self.config.retention_hours)
        if backend is None:
            if self.config.provider != "local":
                raise ConfigurationError(
                    "storage.provider",
                    f"no built-in backend for '{self.config.provider}'; pass a StorageBackend"
                )
            backend = LocalStorageBackend(self.config.base_dir, self.config.base_url)
        self.backend = backend
        self.logger = get_logger(__name__)

    def expiry_for(self, completed_at: datetime) -> datetime:
        return completed_at + self.retention

    async def store(self, job: ReportJob, content: bytes, renderer: Renderer,
                    completed_at: datetime) -> StorageDescriptor:
        """Persist a rendered artifact for a job."""
        filename = build_filename(job, renderer.extension)
        descriptor = await self.backend.save(job.id, filename, content, self.expiry_for(completed_at))
        self.logger.info("Report stored", extra={
            "job_id": job.id,
            "provider": descriptor.provider,
            "bytes": len(content),
            "expires_at": isoformat(descriptor.expires_at)
        })
        return descriptor

    async def discard(self, descriptor: StorageDescriptor) -> None:
        await self.backend.delete(descriptor)

    async def open_download(self, job: ReportJob, now: Optional[datetime] = None) -> DownloadHandle:
        """
        Grant a download for a job's artifact.

        Raises:
            ReportNotFoundError: If the job is not completed or has no artifact
            ReportExpiredError: If the artifact is past its expiry
        """
        if job.status != JobStatus.COMPLETED or job.output.storage is None:
            raise ReportNotFoundError(job.id, status=job.status.value)

        now = now or self.clock()
        descriptor = job.output.storage
        if now >= descriptor.expires_at:
            raise ReportExpiredError(job.id, expires_at=isoformat(descriptor.expires_at))

        size = await self.backend.size(descriptor)
        if size is None:
            self.logger.warning("Artifact missing for completed job", extra={"job_id": job.id})
            raise ReportNotFoundError(job.id, status=job.status.value)

        renderer = get_renderer(job.output.format)
        filename = os.path.basename(descriptor.path or descriptor.key or build_filename(job, renderer.extension))
        return DownloadHandle(
            job_id=job.id,
            filename=filename,
            content_type=renderer.content_type,
            size=size,
            descriptor=descriptor,
            backend=self.backend,
        )

    async def purge_expired(self, database_manager, now: Optional[datetime] = None) -> int:
        """Delete expired artifacts; job records are kept."""
        now = now or self.clock()
        purged = 0
        for job in await database_manager.list_expired_outputs(now):
            if await self.backend.delete(job.output.storage):
                purged += 1
        if purged:
            self.logger.info(f"Purged {purged} expired report artifacts")
        return purged
