"""
Background job queue for batch processing.

Jobs live in Redis when ``REDIS_URL`` is configured and reachable, so that
``server/run_workers.py`` processes can pick them up. Without Redis the queue
is kept in memory and served by worker threads inside the web process.
"""
import json
import logging
import threading
import time
import traceback
import uuid
from collections import OrderedDict
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import redis

from .pipeline_config import config

logger = logging.getLogger(__name__)

JOB_TTL_SECONDS = 86400
# Finished in-process jobs kept for get_job / stats
FINISHED_JOBS_KEPT = 100


class JobStatus(Enum):
    """Job status enumeration"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


@dataclass
class Job:
    """Background job data structure"""
    job_id: str
    job_type: str
    payload: Dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 0
    error_message: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    worker_id: Optional[str] = None
    priority: int = 0  # Higher numbers = higher priority

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for Redis storage"""
        data = asdict(self)
        for field in ['created_at', 'started_at', 'completed_at']:
            if data[field]:
                data[field] = data[field].isoformat()
        data['status'] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Job':
        """Create job from dictionary"""
        for field in ['created_at', 'started_at', 'completed_at']:
            if data.get(field):
                data[field] = datetime.fromisoformat(data[field])

        if 'status' in data:
            data['status'] = JobStatus(data['status'])

        return cls(**data)


class JobQueue:
    """Redis job queue with an in-process fallback"""

    def __init__(self, redis_client: Optional[redis.Redis] = None, use_redis: bool = True):
        self.queue_name = config.job_queue_name
        self.processing_set = f"{self.queue_name}:processing"
        self.completed_set = f"{self.queue_name}:completed"
        self.failed_set = f"{self.queue_name}:failed"
        self.retry_set = f"{self.queue_name}:retry"
        self.job_data_prefix = f"{self.queue_name}:job:"

        self.redis_client = redis_client
        if self.redis_client is None and use_redis:
            self.redis_client = self._create_redis_client()

        # In-process fallback: active jobs, plus a bounded window of finished ones
        self._jobs: Dict[str, Job] = {}
        self._finished: "OrderedDict[str, Job]" = OrderedDict()
        self._lock = threading.Lock()

        if not self.redis_client:
            logger.info("Job queue running in-process (no Redis)")

    def _create_redis_client(self) -> Optional[redis.Redis]:
        """Create Redis client, or None when Redis is unset or unreachable"""
        if not config.is_redis_available:
            return None

        try:
            redis_config = config.get_redis_config()
            client = redis.from_url(**redis_config)
            client.ping()
            logger.info("Redis connection established")
            return client
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            return None

    @property
    def is_distributed(self) -> bool:
        return self.redis_client is not None

    def enqueue_job(self, job_type: str, payload: Dict[str, Any],
                    priority: int = 0, max_retries: int = 0) -> str:
        """Add job to queue"""
        job = Job(
            job_id=str(uuid.uuid4()),
            job_type=job_type,
            payload=payload,
            priority=priority,
            max_retries=max_retries
        )

        if self.redis_client:
            try:
                self._save_job(job)
                self.redis_client.zadd(self.queue_name, {job.job_id: priority})
                logger.info(f"Enqueued job {job.job_id} of type {job_type}")
                return job.job_id
            except redis.RedisError as e:
                logger.warning(
                    f"Redis enqueue failed, keeping job {job.job_id} in-process: {e}")

        with self._lock:
            self._jobs[job.job_id] = job

        logger.info(f"Enqueued job {job.job_id} of type {job_type} (in-process)")
        return job.job_id

    def dequeue_job(self, worker_id: str) -> Optional[Job]:
        """Get next job from queue"""
        if self.redis_client:
            try:
                job = self._dequeue_redis(worker_id)
                if job:
                    return job
            except redis.RedisError as e:
                logger.error(f"Redis dequeue failed: {e}")

        with self._lock:
            pending = [job for job in self._jobs.values()
                       if job.status == JobStatus.PENDING]
            if not pending:
                return None
            job = max(pending, key=lambda j: (j.priority, -j.created_at.timestamp()))
            job.status = JobStatus.PROCESSING
            job.started_at = datetime.now()
            job.worker_id = worker_id
            return job

    def _dequeue_redis(self, worker_id: str) -> Optional[Job]:
        self._promote_due_retries()

        result = self.redis_client.zpopmax(self.queue_name)
        if not result:
            return None

        job_id, _priority = result[0]
        job_data = self.redis_client.get(f"{self.job_data_prefix}{job_id}")
        if not job_data:
            logger.warning(f"Job data not found for {job_id}")
            return None

        job = Job.from_dict(json.loads(job_data))
        job.status = JobStatus.PROCESSING
        job.started_at = datetime.now()
        job.worker_id = worker_id

        self.redis_client.sadd(self.processing_set, job_id)
        self._save_job(job)
        return job

    def _promote_due_retries(self):
        """Move retry jobs whose backoff has elapsed back onto the queue"""
        due = self.redis_client.zrangebyscore(self.retry_set, 0, time.time())
        for job_id in due:
            if self.redis_client.zrem(self.retry_set, job_id):
                self.redis_client.zadd(self.queue_name, {job_id: 0})

    def _save_job(self, job: Job):
        self.redis_client.setex(f"{self.job_data_prefix}{job.job_id}",
                                JOB_TTL_SECONDS, json.dumps(job.to_dict()))

    def _is_local(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs or job_id in self._finished

    def _store(self, job: Job):
        if self.redis_client and not self._is_local(job.job_id):
            self._save_job(job)
            return

        with self._lock:
            if job.status in (JobStatus.COMPLETED, JobStatus.FAILED):
                self._jobs.pop(job.job_id, None)
                self._finished[job.job_id] = job
                self._finished.move_to_end(job.job_id)
                while len(self._finished) > FINISHED_JOBS_KEPT:
                    self._finished.popitem(last=False)
            else:
                self._jobs[job.job_id] = job

    def complete_job(self, job_id: str, result: Dict[str, Any] = None):
        """Mark job as completed"""
        job = self.get_job(job_id)
        if not job:
            return

        in_redis = self.redis_client is not None and not self._is_local(job_id)
        job.status = JobStatus.COMPLETED
        job.completed_at = datetime.now()
        job.result = result

        self._store(job)
        if in_redis:
            self.redis_client.srem(self.processing_set, job_id)
            self.redis_client.sadd(self.completed_set, job_id)

        logger.info(f"Completed job {job_id}")

    def fail_job(self, job_id: str, error_message: str, retry: bool = True):
        """Mark job as failed, re-queueing it while retries remain"""
        job = self.get_job(job_id)
        if not job:
            return

        job.error_message = error_message
        job.retry_count += 1
        in_redis = self.redis_client is not None and not self._is_local(job_id)

        if retry and job.retry_count <= job.max_retries:
            job.status = JobStatus.RETRYING
            # Exponential backoff, max 5 min
            delay = min(300, 60 * (2 ** job.retry_count))

            if in_redis:
                self.redis_client.srem(self.processing_set, job_id)
                self.redis_client.zadd(self.retry_set, {job_id: time.time() + delay})
            else:
                job.status = JobStatus.PENDING  # Immediate retry in memory

            logger.warning(
                f"Retrying job {job_id} (attempt {job.retry_count}/{job.max_retries})")
        else:
            job.status = JobStatus.FAILED
            job.completed_at = datetime.now()

            if in_redis:
                self.redis_client.srem(self.processing_set, job_id)
                self.redis_client.sadd(self.failed_set, job_id)

            logger.error(f"Failed job {job_id}: {error_message}")

        self._store(job)

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get job by ID"""
        with self._lock:
            job = self._jobs.get(job_id) or self._finished.get(job_id)
        if job or not self.redis_client:
            return job

        job_data = self.redis_client.get(f"{self.job_data_prefix}{job_id}")
        return Job.from_dict(json.loads(job_data)) if job_data else None

    def get_queue_stats(self) -> Dict[str, int]:
        """Get queue statistics"""
        with self._lock:
            jobs = list(self._jobs.values()) + list(self._finished.values())
        stats = {
            status.value: sum(1 for job in jobs if job.status == status)
            for status in JobStatus
        }

        if self.redis_client:
            try:
                stats[JobStatus.PENDING.value] += self.redis_client.zcard(self.queue_name)
                stats[JobStatus.PROCESSING.value] += self.redis_client.scard(self.processing_set)
                stats[JobStatus.COMPLETED.value] += self.redis_client.scard(self.completed_set)
                stats[JobStatus.FAILED.value] += self.redis_client.scard(self.failed_set)
                stats[JobStatus.RETRYING.value] += self.redis_client.zcard(self.retry_set)
            except redis.RedisError as e:
                logger.error(f"Failed to read Redis queue stats: {e}")

        return stats


class BackgroundWorker:
    """Background worker for processing jobs"""

    def __init__(self, worker_id: str = None, job_handlers: Dict[str, Callable] = None,
                 queue: Optional[JobQueue] = None, poll_interval: float = 1.0):
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.job_queue = queue or job_queue
        self.job_handlers = job_handlers or {}
        self.poll_interval = poll_interval
        self.processed_count = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def register_handler(self, job_type: str, handler: Callable):
        """Register job handler function"""
        self.job_handlers[job_type] = handler
        logger.info(f"Registered handler for job type: {job_type}")

    def run(self):
        """Process jobs until stopped"""
        logger.info(f"Worker {self.worker_id} started")

        while not self._stop_event.is_set():
            try:
                job = self.job_queue.dequeue_job(self.worker_id)

                if job:
                    self.process_job(job)
                    self.processed_count += 1
                else:
                    self._stop_event.wait(self.poll_interval)

            except Exception as e:
                logger.error(f"Worker {self.worker_id} error: {e}")
                self._stop_event.wait(5)

        logger.info(
            f"Worker {self.worker_id} stopped after processing {self.processed_count} jobs")

    def start(self) -> threading.Thread:
        """Run the worker loop on a daemon thread"""
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run, name=self.worker_id, daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)

    def process_job(self, job: Job):
        """Process a single job"""
        logger.info(f"Processing job {job.job_id} of type {job.job_type}")

        try:
            handler = self.job_handlers.get(job.job_type)
            if not handler:
                raise ValueError(
                    f"No handler registered for job type: {job.job_type}")

            result = handler(job.payload)
            self.job_queue.complete_job(job.job_id, result)

        except Exception as e:
            error_message = f"Job processing failed: {str(e)}\n{traceback.format_exc()}"
            logger.error(error_message)
            self.job_queue.fail_job(job.job_id, error_message)


# Global job queue instance
job_queue = JobQueue()


def enqueue_batch_processing(batch_id: str, user_id: str, jobs: List[Dict[str, Any]]) -> str:
    """Enqueue processing of an uploaded batch"""
    payload = {
        'batch_id': batch_id,
        'user_id': user_id,
        'jobs': jobs,
    }

    return job_queue.enqueue_job('process_batch', payload, priority=1)


def create_background_workers(num_workers: int = None) -> List[BackgroundWorker]:
    """Create workers with the batch handlers registered"""
    from .batch_orchestrator import process_batch_handler

    if num_workers is None:
        num_workers = config.batch_workers

    workers = []
    for i in range(num_workers):
        worker = BackgroundWorker(f"worker-{i+1}")
        worker.register_handler('process_batch', process_batch_handler)
        workers.append(worker)
        logger.info(f"Created worker {worker.worker_id}")

    return workers


def start_background_workers(num_workers: int = None) -> List[BackgroundWorker]:
    """Start background worker threads for processing jobs"""
    workers = create_background_workers(num_workers)
    for worker in workers:
        worker.start()
    return workers
