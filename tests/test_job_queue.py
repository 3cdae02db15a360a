import time

import pytest

from metagen.job_queue import FINISHED_JOBS_KEPT, BackgroundWorker, Job, JobQueue, JobStatus


@pytest.fixture
def queue():
    return JobQueue(use_redis=False)


def test_in_process_queue_without_redis(queue):
    assert not queue.is_distributed
    assert queue.dequeue_job('w1') is None


def test_higher_priority_dequeued_first(queue):
    low = queue.enqueue_job('process_batch', {'batch_id': 'low'})
    high = queue.enqueue_job('process_batch', {'batch_id': 'high'}, priority=5)

    first = queue.dequeue_job('w1')
    second = queue.dequeue_job('w1')

    assert [first.job_id, second.job_id] == [high, low]
    assert first.status == JobStatus.PROCESSING
    assert first.worker_id == 'w1'
    assert queue.dequeue_job('w1') is None


def test_worker_completes_job(queue):
    seen = []
    worker = BackgroundWorker('w1', {'echo': lambda payload: seen.append(payload) or {'ok': True}},
                              queue=queue)
    job_id = queue.enqueue_job('echo', {'value': 1})

    worker.process_job(queue.dequeue_job('w1'))

    job = queue.get_job(job_id)
    assert seen == [{'value': 1}]
    assert job.status == JobStatus.COMPLETED
    assert job.result == {'ok': True}
    assert job.payload == {'value': 1}
    assert queue.get_queue_stats()['completed'] == 1


def test_finished_jobs_do_not_accumulate(queue):
    worker = BackgroundWorker('w1', {'echo': lambda payload: payload}, queue=queue)

    job_ids = [queue.enqueue_job('echo', {'n': n}) for n in range(FINISHED_JOBS_KEPT + 20)]
    while True:
        job = queue.dequeue_job('w1')
        if job is None:
            break
        worker.process_job(job)

    assert len(queue._jobs) == 0
    assert len(queue._finished) == FINISHED_JOBS_KEPT
    assert queue.get_job(job_ids[0]) is None
    assert queue.get_job(job_ids[-1]).result == {'n': FINISHED_JOBS_KEPT + 19}
    assert queue.get_queue_stats()['completed'] == FINISHED_JOBS_KEPT


def test_failing_handler_marks_job_failed(queue):
    def explode(payload):
        raise RuntimeError('handler blew up')

    worker = BackgroundWorker('w1', {'explode': explode}, queue=queue)
    job_id = queue.enqueue_job('explode', {})

    worker.process_job(queue.dequeue_job('w1'))

    job = queue.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert 'handler blew up' in job.error_message


def test_unknown_job_type_fails(queue):
    job_id = queue.enqueue_job('mystery', {})

    BackgroundWorker('w1', queue=queue).process_job(queue.dequeue_job('w1'))

    assert queue.get_job(job_id).status == JobStatus.FAILED


def test_in_memory_retry_requeues_job(queue):
    job_id = queue.enqueue_job('flaky', {}, max_retries=1)
    queue.dequeue_job('w1')

    queue.fail_job(job_id, 'first attempt failed')
    assert queue.get_job(job_id).status == JobStatus.PENDING

    queue.dequeue_job('w1')
    queue.fail_job(job_id, 'second attempt failed')
    assert queue.get_job(job_id).status == JobStatus.FAILED


def test_job_dict_round_trip():
    job = Job(job_id='j1', job_type='process_batch', payload={'batch_id': 'b'},
              result={'status': 'completed'})
    restored = Job.from_dict(job.to_dict())

    assert restored.job_id == 'j1'
    assert restored.status == JobStatus.PENDING
    assert restored.created_at == job.created_at
    assert restored.payload == {'batch_id': 'b'}
    assert restored.result == {'status': 'completed'}


def test_worker_thread_starts_and_stops(queue):
    done = []
    worker = BackgroundWorker('w1', {'note': lambda payload: done.append(payload)},
                              queue=queue, poll_interval=0.01)
    queue.enqueue_job('note', {'n': 1})

    worker.start()
    for _ in range(200):
        if done:
            break
        time.sleep(0.01)
    worker.stop(timeout=2)

    assert done == [{'n': 1}]
    assert not worker.running
