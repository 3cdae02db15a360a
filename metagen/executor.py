"""
Per-image job execution: resize, generate metadata, store, clean up.

``ImageJobExecutor.execute`` always returns a tagged outcome, either an
``ImageResult`` or a ``FailureResult``. It never raises for a job failure, and
the job's temporary files (upload and resized copy) are gone once it returns.
"""
import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from .errors import GenerationError, GenerationTimeout, PipelineError, StorageIOError
from .generation_client import Metadata
from .resizer import resize
from .storage import ImageStorage, image_storage
from .pipeline_config import config

logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ImageJob:
    """One uploaded image waiting to be processed"""
    image_id: str
    source_path: str
    filename: str
    batch_id: str
    user_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'image_id': self.image_id,
            'source_path': self.source_path,
            'filename': self.filename,
            'batch_id': self.batch_id,
            'user_id': self.user_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ImageJob':
        return cls(
            image_id=data['image_id'],
            source_path=data['source_path'],
            filename=data['filename'],
            batch_id=data['batch_id'],
            user_id=data['user_id'],
        )


@dataclass(frozen=True)
class ImageResult:
    """Successful outcome of one image job"""
    image_id: str
    image_name: str
    image_url: str
    storage_key: str
    size_bytes: int
    metadata: Metadata
    generated_at: str = field(default_factory=_utc_now_iso)

    success = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'image_id': self.image_id,
            'image_name': self.image_name,
            'image_url': self.image_url,
            'storage_key': self.storage_key,
            'size_bytes': self.size_bytes,
            'metadata': self.metadata.to_dict(),
            'generated_at': self.generated_at,
        }


@dataclass(frozen=True)
class FailureResult:
    """Failed outcome of one image job, tagged with a stable error kind"""
    image_id: str
    filename: str
    error_reason: str
    error_detail: str = ''
    timestamp: str = field(default_factory=_utc_now_iso)

    success = False

    @classmethod
    def from_error(cls, job: ImageJob, error: PipelineError) -> 'FailureResult':
        return cls(image_id=job.image_id, filename=job.filename,
                   error_reason=error.kind, error_detail=error.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'image_id': self.image_id,
            'filename': self.filename,
            'error_reason': self.error_reason,
            'error_detail': self.error_detail,
            'timestamp': self.timestamp,
        }


Outcome = Union[ImageResult, FailureResult]


def remove_temp_file(path: Optional[str]):
    """Best-effort delete; problems are logged and never raised"""
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove temporary file {path}: {e}")


class ImageJobExecutor:
    """Runs one image job to a single outcome"""

    def __init__(self, generation_client, storage: Optional[ImageStorage] = None,
                 resize_dir: Optional[str] = None, timeout: Optional[float] = None):
        self.generation_client = generation_client
        self.storage = storage or image_storage
        self.resize_dir = resize_dir
        self.timeout = timeout if timeout is not None else config.request_timeout

    async def execute(self, job: ImageJob) -> Outcome:
        resized_path = None
        try:
            loop = asyncio.get_running_loop()
            resized_path = await loop.run_in_executor(
                None, resize, job.source_path, self.resize_dir)

            try:
                metadata = await asyncio.wait_for(
                    self.generation_client.generate(resized_path),
                    timeout=self.timeout)
            except asyncio.TimeoutError:
                raise GenerationTimeout(
                    f"No metadata for {job.filename} within {self.timeout}s")

            size_bytes = os.path.getsize(job.source_path)
            key = await asyncio.to_thread(
                self.storage.save, job.source_path, job.user_id,
                job.batch_id, job.image_id, job.filename)

            logger.debug(f"Image {job.filename} ({job.image_id}) processed")
            return ImageResult(
                image_id=job.image_id,
                image_name=job.filename,
                image_url=self.storage.url_for(key),
                storage_key=key,
                size_bytes=size_bytes,
                metadata=metadata,
            )

        except PipelineError as e:
            logger.warning(
                f"Image {job.filename} in batch {job.batch_id} failed: {e}")
            return FailureResult.from_error(job, e)
        except OSError as e:
            logger.warning(
                f"Image {job.filename} in batch {job.batch_id} failed: {e}")
            return FailureResult.from_error(job, StorageIOError(str(e)))
        except Exception as e:
            logger.error(
                f"Unexpected error processing {job.filename} in batch {job.batch_id}: {e}",
                exc_info=True)
            return FailureResult.from_error(job, GenerationError(str(e)))
        finally:
            remove_temp_file(resized_path)
            remove_temp_file(job.source_path)

    def discard(self, job: ImageJob):
        """Release a job's upload without running it"""
        remove_temp_file(job.source_path)
