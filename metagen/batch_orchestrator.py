"""
Batch orchestration: admission, bounded-concurrency dispatch, settlement.

``start_batch`` creates the batch record and hands the jobs to the job queue;
a background worker then calls ``run_batch`` which drives every image to
exactly one outcome:

    admission check -> executor -> token debit -> append to batch record

Outcomes are appended one at a time per batch; the final append moves the
batch to its terminal status and ``finalize`` confirms it.
"""
import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .batch_store import BatchStore, batch_store
from .errors import InsufficientTokens, StorageIOError
from .executor import FailureResult, ImageJob, ImageJobExecutor, Outcome, remove_temp_file
from .generation_client import GenerationClient
from .job_queue import enqueue_batch_processing
from .pipeline_config import config
from .storage import ImageStorage, image_storage
from .token_ledger import TokenLedger, token_ledger

logger = logging.getLogger(__name__)

MAX_RECORD_ATTEMPTS = 3
RECORD_RETRY_DELAY = 0.2


class BatchOrchestrator:
    """Owns the dispatch loop of each batch"""

    def __init__(self, store: Optional[BatchStore] = None, ledger: Optional[TokenLedger] = None,
                 storage: Optional[ImageStorage] = None,
                 client_factory: Optional[Callable[[], Any]] = None,
                 dispatcher: Optional[Callable[[str, str, List[ImageJob]], Any]] = None,
                 max_concurrency: Optional[int] = None, token_cost: Optional[int] = None):
        self.store = store or batch_store
        self.ledger = ledger or token_ledger
        self.storage = storage or image_storage
        self.client_factory = client_factory or GenerationClient
        self.dispatcher = dispatcher or self._enqueue
        self.max_concurrency = max(1, max_concurrency or config.max_concurrent_workers)
        self.token_cost = token_cost or config.token_cost_per_image

    @staticmethod
    def _enqueue(batch_id: str, user_id: str, jobs: List[ImageJob]) -> str:
        return enqueue_batch_processing(batch_id, user_id, [job.to_dict() for job in jobs])

    def start_batch(self, user_id: str, uploads: Sequence[Tuple[str, str]],
                    name: Optional[str] = None, retry_of: Optional[str] = None) -> Dict[str, Any]:
        """Create a batch for ``uploads`` and dispatch it without waiting.

        ``uploads`` holds ``(temporary path, original filename)`` pairs whose
        files now belong to the pipeline.
        """
        if not uploads:
            raise ValueError("No images provided")
        if len(uploads) > config.max_images_per_batch:
            raise ValueError(
                f"Too many images: {len(uploads)} (max {config.max_images_per_batch} per batch)")

        if retry_of and not name:
            original = self.store.get_batch(retry_of, user_id)
            name = f"Retry of {original['name']}"

        balance = self.ledger.get_balance(user_id)
        batch = self.store.create_batch(
            user_id, len(uploads), name=name, remaining_tokens=balance)
        batch_id = batch['batch_id']

        jobs = [
            ImageJob(image_id=uuid.uuid4().hex, source_path=path, filename=filename,
                     batch_id=batch_id, user_id=user_id)
            for path, filename in uploads
        ]
        self.dispatcher(batch_id, user_id, jobs)

        logger.info(
            f"Started batch {batch_id} for user {user_id}: {len(jobs)} images, balance {balance}")
        return {
            'batch_id': batch_id,
            'total_images': batch['total_images'],
            'remaining_tokens': balance,
            'status': batch['status'],
        }

    async def run_batch(self, batch_id: str, user_id: str, jobs: List[ImageJob]) -> Dict[str, Any]:
        """Run every job to an outcome, then finalize the batch"""
        try:
            current = await asyncio.to_thread(self.store.get_batch, batch_id)
        except Exception:
            logger.error(f"Cannot load batch {batch_id}, releasing {len(jobs)} uploads")
            for job in jobs:
                remove_temp_file(job.source_path)
            raise

        recorded = {entry['image_id'] for entry in
                    current['successful_images'] + current['failed_images']}

        pending = []
        for job in jobs:
            if job.image_id in recorded:
                # Redelivered job; its outcome is already on the record
                remove_temp_file(job.source_path)
            else:
                pending.append(job)

        logger.info(
            f"Running batch {batch_id}: {len(pending)} images "
            f"(concurrency {self.max_concurrency}, {len(recorded)} already recorded)")

        client = self.client_factory()
        executor = ImageJobExecutor(client, self.storage)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run_one(job: ImageJob) -> Tuple[ImageJob, Outcome, int]:
            async with semaphore:
                try:
                    outcome, debited = await self._process_job(executor, job)
                    return job, outcome, debited
                except Exception as e:
                    logger.error(
                        f"Settlement failed for {job.filename} in batch {batch_id}: {e}",
                        exc_info=True)
                    remove_temp_file(job.source_path)
                    return job, FailureResult.from_error(job, StorageIOError(str(e))), 0

        unrecorded = []
        try:
            tasks = [asyncio.ensure_future(run_one(job)) for job in pending]
            # Single consumer: outcomes of this batch are appended one at a time
            for next_done in asyncio.as_completed(tasks):
                job, outcome, debited = await next_done
                if not await self._record(batch_id, user_id, outcome, debited):
                    unrecorded.append((job, outcome, debited))
        finally:
            await client.close()

        for job, outcome, debited in unrecorded:
            await self._record_as_io_failure(batch_id, job, outcome, debited)

        try:
            return await asyncio.to_thread(self.store.finalize, batch_id)
        except ValueError as e:
            logger.error(f"Batch {batch_id} left unfinished: {e}")
            return await asyncio.to_thread(self.store.get_batch, batch_id)

    async def _current_balance(self, user_id: str) -> Optional[int]:
        try:
            return await asyncio.to_thread(self.ledger.get_balance, user_id)
        except Exception as e:
            logger.warning(f"Could not read balance of user {user_id}: {e}")
            return None

    async def _record(self, batch_id: str, user_id: str, outcome: Outcome,
                      debited: int) -> bool:
        """Append one outcome, retrying; re-appending a recorded image is a no-op"""
        for attempt in range(1, MAX_RECORD_ATTEMPTS + 1):
            remaining = await self._current_balance(user_id)
            try:
                await asyncio.to_thread(
                    self.store.append_outcome, batch_id, outcome, remaining, debited)
                return True
            except Exception as e:
                logger.warning(
                    f"Recording image {outcome.image_id} on batch {batch_id} failed "
                    f"(attempt {attempt}/{MAX_RECORD_ATTEMPTS}): {e}")
                if attempt < MAX_RECORD_ATTEMPTS:
                    await asyncio.sleep(RECORD_RETRY_DELAY * attempt)
        return False

    async def _record_as_io_failure(self, batch_id: str, job: ImageJob, outcome: Outcome,
                                    debited: int):
        """Replace an outcome that could not be stored with an IOError failure.

        A success is undone first: its stored image is deleted and its debit refunded.
        """
        if outcome.success:
            try:
                await asyncio.to_thread(self.storage.delete, outcome.storage_key)
            except StorageIOError as e:
                logger.warning(f"Could not remove unrecorded image {outcome.storage_key}: {e}")
            if debited:
                try:
                    await asyncio.to_thread(
                        self.ledger.refund, job.user_id, debited, batch_id,
                        f"Refund for unrecorded result of {job.filename}")
                except Exception as e:
                    logger.error(
                        f"Refund of {debited} tokens to user {job.user_id} failed: {e}",
                        exc_info=True)

        failure = FailureResult.from_error(job, StorageIOError(
            f"Outcome of {job.filename} could not be recorded"))
        if not await self._record(batch_id, job.user_id, failure, 0):
            logger.error(
                f"Image {job.image_id} of batch {batch_id} has no recorded outcome")

    async def _process_job(self, executor: ImageJobExecutor, job: ImageJob) -> Tuple[Outcome, int]:
        """Admission check, execution and debit for one job; returns (outcome, tokens debited)"""
        balance = await asyncio.to_thread(self.ledger.get_balance, job.user_id)
        if balance < self.token_cost:
            executor.discard(job)
            logger.warning(
                f"Image {job.filename} in batch {job.batch_id} skipped: balance {balance} "
                f"below cost {self.token_cost}")
            return self._insufficient(job), 0

        outcome = await executor.execute(job)
        if not outcome.success:
            return outcome, 0

        debited = await asyncio.to_thread(
            self.ledger.try_debit, job.user_id, self.token_cost, job.batch_id,
            f"Metadata for {job.filename}")
        if debited:
            return outcome, self.token_cost

        # Balance drained by sibling jobs while this one ran
        logger.warning(
            f"Image {job.filename} in batch {job.batch_id} generated but not paid for; "
            f"dropping result")
        try:
            await asyncio.to_thread(self.storage.delete, outcome.storage_key)
        except StorageIOError as e:
            logger.warning(f"Could not remove unpaid image {outcome.storage_key}: {e}")
        return self._insufficient(job), 0

    def _insufficient(self, job: ImageJob) -> FailureResult:
        return FailureResult.from_error(job, InsufficientTokens(
            f"Token balance below {self.token_cost} required for {job.filename}"))


# Global orchestrator instance
batch_orchestrator = BatchOrchestrator()


def process_batch_handler(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Job handler for processing an uploaded batch"""
    batch_id = payload.get('batch_id')
    user_id = payload.get('user_id')
    jobs = [ImageJob.from_dict(item) for item in payload.get('jobs', [])]

    if not batch_id or not user_id:
        raise ValueError("Missing required parameters: batch_id or user_id")

    logger.info(f"Processing batch {batch_id} with {len(jobs)} images")

    batch = asyncio.run(batch_orchestrator.run_batch(batch_id, user_id, jobs))
    return {
        'batch_id': batch_id,
        'status': batch['status'],
        'successful_images_count': batch['successful_images_count'],
        'failed_images_count': batch['failed_images_count'],
    }
