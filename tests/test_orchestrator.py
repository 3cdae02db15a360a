import asyncio
import os

import pytest

from conftest import FakeGenerationClient, leftover_temp_files
from metagen import batch_orchestrator as orchestrator_module
from metagen.batch_orchestrator import BatchOrchestrator, process_batch_handler
from metagen.batch_store import BatchStore
from metagen.errors import BatchNotFound, GenerationError
from metagen.pipeline_config import config
from metagen.storage import ImageStorage
from metagen.token_ledger import TokenLedger


class RecordingDispatcher:
    def __init__(self):
        self.dispatched = []

    def __call__(self, batch_id, user_id, jobs):
        self.dispatched.append((batch_id, user_id, jobs))
        return f'job-{len(self.dispatched)}'


@pytest.fixture
def ledger():
    return TokenLedger()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


def _orchestrator(client, dispatcher, ledger, store=None, **kwargs):
    return BatchOrchestrator(
        store=store or BatchStore(), ledger=ledger,
        storage=ImageStorage(config.storage_dir, '/files'),
        client_factory=lambda: client, dispatcher=dispatcher,
        token_cost=1, **kwargs)


def _run_dispatched(orchestrator, dispatcher):
    batch_id, user_id, jobs = dispatcher.dispatched[-1]
    return asyncio.run(orchestrator.run_batch(batch_id, user_id, jobs))


def _uploads(make_image, *names):
    return [(make_image(name), name) for name in names]


def test_all_images_succeed(make_image, ledger, dispatcher, fake_client):
    ledger.credit('alice', 10)
    orchestrator = _orchestrator(fake_client, dispatcher, ledger)

    started = orchestrator.start_batch(
        'alice', _uploads(make_image, 'a.jpg', 'b.jpg', 'c.jpg'))
    assert started['status'] == 'processing'
    assert started['total_images'] == 3
    assert started['remaining_tokens'] == 10

    batch = _run_dispatched(orchestrator, dispatcher)

    assert batch['status'] == 'completed'
    assert batch['successful_images_count'] == 3
    assert batch['failed_images'] == []
    assert batch['tokens_used'] == 3
    assert batch['remaining_tokens'] == 7
    assert ledger.get_balance('alice') == 7
    assert sorted(img['image_name'] for img in batch['successful_images']) == \
        ['a.jpg', 'b.jpg', 'c.jpg']
    assert fake_client.closed
    assert leftover_temp_files() == []


def test_one_generation_failure_is_partial(make_image, ledger, dispatcher):
    ledger.credit('alice', 10)
    client = FakeGenerationClient(failures={'bad': GenerationError('upstream 500')})
    orchestrator = _orchestrator(client, dispatcher, ledger)

    orchestrator.start_batch('alice', _uploads(make_image, 'good1.jpg', 'bad.jpg', 'good2.jpg'))
    batch = _run_dispatched(orchestrator, dispatcher)

    assert batch['status'] == 'partial'
    assert batch['successful_images_count'] == 2
    assert len(batch['failed_images']) == 1
    assert batch['failed_images'][0]['filename'] == 'bad.jpg'
    assert batch['failed_images'][0]['error_reason'] == 'GenerationError'
    assert ledger.get_balance('alice') == 8
    assert leftover_temp_files() == []


def test_balance_covers_only_one_image(make_image, ledger, dispatcher, fake_client):
    ledger.credit('alice', 1)
    orchestrator = _orchestrator(fake_client, dispatcher, ledger, max_concurrency=1)

    orchestrator.start_batch('alice', _uploads(make_image, 'first.jpg', 'second.jpg'))
    batch = _run_dispatched(orchestrator, dispatcher)

    assert batch['status'] == 'partial'
    assert batch['successful_images_count'] == 1
    assert batch['failed_images'][0]['error_reason'] == 'InsufficientTokens'
    assert ledger.get_balance('alice') == 0
    assert batch['remaining_tokens'] == 0
    assert leftover_temp_files() == []


def test_concurrent_jobs_never_overdraw(make_image, ledger, dispatcher, fake_client):
    ledger.credit('alice', 2)
    orchestrator = _orchestrator(fake_client, dispatcher, ledger, max_concurrency=5)

    names = [f'img{n}.jpg' for n in range(5)]
    orchestrator.start_batch('alice', _uploads(make_image, *names))
    batch = _run_dispatched(orchestrator, dispatcher)

    assert batch['successful_images_count'] == 2
    assert batch['failed_images_count'] == 3
    assert {f['error_reason'] for f in batch['failed_images']} == {'InsufficientTokens'}
    assert ledger.get_balance('alice') == 0
    assert len(list(_stored_files())) == 2
    assert leftover_temp_files() == []


def _stored_files():
    for root, _dirs, files in os.walk(config.storage_dir):
        for name in files:
            yield os.path.join(root, name)


def test_exhausted_balance_skips_executor(make_image, ledger, dispatcher, fake_client):
    orchestrator = _orchestrator(fake_client, dispatcher, ledger)

    orchestrator.start_batch('broke', _uploads(make_image, 'x.jpg', 'y.jpg'))
    batch = _run_dispatched(orchestrator, dispatcher)

    assert fake_client.calls == []
    assert batch['status'] == 'failed'
    assert [f['error_reason'] for f in batch['failed_images']] == \
        ['InsufficientTokens', 'InsufficientTokens']
    assert ledger.get_balance('broke') == 0
    assert leftover_temp_files() == []


def test_every_image_gets_exactly_one_outcome(make_image, ledger, dispatcher):
    ledger.credit('alice', 100)
    client = FakeGenerationClient(
        failures={'fail': GenerationError('nope')},
        delays={'slow': 0.05})
    orchestrator = _orchestrator(client, dispatcher, ledger, max_concurrency=3)

    names = ['ok1.jpg', 'fail1.jpg', 'slow1.jpg', 'ok2.jpg', 'fail2.jpg', 'slow2.jpg', 'ok3.jpg']
    orchestrator.start_batch('alice', _uploads(make_image, *names))
    batch = _run_dispatched(orchestrator, dispatcher)

    ids = [img['image_id'] for img in batch['successful_images']] + \
          [img['image_id'] for img in batch['failed_images']]
    assert len(ids) == len(set(ids)) == len(names)
    assert batch['successful_images_count'] == 5
    assert batch['status'] == 'partial'


def test_redelivered_batch_is_not_processed_twice(make_image, ledger, dispatcher, fake_client):
    ledger.credit('alice', 10)
    orchestrator = _orchestrator(fake_client, dispatcher, ledger)

    orchestrator.start_batch('alice', _uploads(make_image, 'once.jpg'))
    first = _run_dispatched(orchestrator, dispatcher)
    second = _run_dispatched(orchestrator, dispatcher)

    assert len(fake_client.calls) == 1
    assert first == second
    assert ledger.get_balance('alice') == 9


def test_start_batch_validation(make_image, ledger, dispatcher, fake_client, monkeypatch):
    orchestrator = _orchestrator(fake_client, dispatcher, ledger)

    with pytest.raises(ValueError):
        orchestrator.start_batch('alice', [])

    monkeypatch.setattr(config, 'max_images_per_batch', 1)
    with pytest.raises(ValueError):
        orchestrator.start_batch('alice', _uploads(make_image, 'one.jpg', 'two.jpg'))
    assert dispatcher.dispatched == []


def test_retry_batch_is_named_after_original(make_image, ledger, dispatcher, fake_client):
    orchestrator = _orchestrator(fake_client, dispatcher, ledger)

    original = orchestrator.start_batch(
        'alice', _uploads(make_image, 'a.jpg'), name='Holiday')
    retry = orchestrator.start_batch(
        'alice', _uploads(make_image, 'b.jpg'), retry_of=original['batch_id'])

    assert BatchStore().get_batch(retry['batch_id'])['name'] == 'Retry of Holiday'

    with pytest.raises(BatchNotFound):
        orchestrator.start_batch('bob', _uploads(make_image, 'c.jpg'),
                                 retry_of=original['batch_id'])


def test_process_batch_handler_runs_payload(make_image, ledger, dispatcher, fake_client,
                                            monkeypatch):
    ledger.credit('alice', 5)
    orchestrator = _orchestrator(fake_client, dispatcher, ledger)
    monkeypatch.setattr(orchestrator_module, 'batch_orchestrator', orchestrator)

    started = orchestrator.start_batch('alice', _uploads(make_image, 'p.jpg', 'q.jpg'))
    batch_id, user_id, jobs = dispatcher.dispatched[-1]

    result = process_batch_handler({
        'batch_id': batch_id,
        'user_id': user_id,
        'jobs': [job.to_dict() for job in jobs],
    })

    assert result == {
        'batch_id': started['batch_id'],
        'status': 'completed',
        'successful_images_count': 2,
        'failed_images_count': 0,
    }


def test_process_batch_handler_requires_ids():
    with pytest.raises(ValueError):
        process_batch_handler({'jobs': []})


class FlakyAppendStore(BatchStore):
    """Fails the first append of every image named in ``flaky``, always fails those in ``broken``"""

    def __init__(self, flaky=(), broken=()):
        super().__init__()
        self.flaky = set(flaky)
        self.broken = set(broken)
        self.attempts = []

    def append_outcome(self, batch_id, outcome, remaining_tokens=None, tokens_debited=0):
        name = outcome.image_name if outcome.success else outcome.filename
        self.attempts.append(name)
        if name in self.broken and outcome.success:
            raise OSError('database is locked')
        if name in self.flaky:
            self.flaky.discard(name)
            raise OSError('database is locked')
        return super().append_outcome(batch_id, outcome, remaining_tokens, tokens_debited)


@pytest.fixture
def no_record_delay(monkeypatch):
    monkeypatch.setattr(orchestrator_module, 'RECORD_RETRY_DELAY', 0)


def test_transient_append_error_is_retried(make_image, ledger, dispatcher, fake_client,
                                           no_record_delay):
    ledger.credit('alice', 10)
    store = FlakyAppendStore(flaky={'a.jpg'})
    orchestrator = _orchestrator(fake_client, dispatcher, ledger, store=store)

    orchestrator.start_batch('alice', _uploads(make_image, 'a.jpg', 'b.jpg'))
    batch = _run_dispatched(orchestrator, dispatcher)

    assert store.attempts.count('a.jpg') == 2
    assert batch['status'] == 'completed'
    assert batch['successful_images_count'] == 2
    assert ledger.get_balance('alice') == 8
    assert leftover_temp_files() == []


def test_unrecordable_success_becomes_refunded_io_failure(make_image, ledger, dispatcher,
                                                         fake_client, no_record_delay):
    ledger.credit('alice', 10)
    store = FlakyAppendStore(broken={'lost.jpg'})
    orchestrator = _orchestrator(fake_client, dispatcher, ledger, store=store)

    orchestrator.start_batch('alice', _uploads(make_image, 'kept.jpg', 'lost.jpg'))
    batch = _run_dispatched(orchestrator, dispatcher)

    assert batch['status'] == 'partial'
    assert [img['image_name'] for img in batch['successful_images']] == ['kept.jpg']
    assert batch['failed_images'][0]['filename'] == 'lost.jpg'
    assert batch['failed_images'][0]['error_reason'] == 'IOError'
    assert ledger.get_balance('alice') == 9
    assert [h['action_type'] for h in ledger.get_history('alice')].count('refund') == 1
    assert len(list(_stored_files())) == 1
    assert leftover_temp_files() == []


class UnreadableBatchStore(BatchStore):
    def get_batch(self, batch_id, user_id=None):
        raise OSError('disk I/O error')


def test_unreadable_batch_releases_uploads(make_image, ledger, dispatcher, fake_client):
    ledger.credit('alice', 10)
    orchestrator = _orchestrator(fake_client, dispatcher, ledger, store=UnreadableBatchStore())

    orchestrator.start_batch('alice', _uploads(make_image, 'a.jpg', 'b.jpg'))
    with pytest.raises(OSError):
        _run_dispatched(orchestrator, dispatcher)

    assert fake_client.calls == []
    assert ledger.get_balance('alice') == 10
    assert leftover_temp_files() == []


class RefusingLedger(TokenLedger):
    """Reports a balance but refuses every debit, as if siblings drained it mid-flight"""

    def try_debit(self, user_id, amount, batch_id=None, description=None):
        return False


def test_refused_debit_drops_generated_result(make_image, dispatcher, fake_client):
    ledger = RefusingLedger()
    ledger.credit('alice', 5)
    orchestrator = _orchestrator(fake_client, dispatcher, ledger)

    orchestrator.start_batch('alice', _uploads(make_image, 'late.jpg'))
    batch = _run_dispatched(orchestrator, dispatcher)

    assert len(fake_client.calls) == 1
    assert batch['status'] == 'failed'
    assert batch['failed_images'][0]['error_reason'] == 'InsufficientTokens'
    assert batch['tokens_used'] == 0
    assert ledger.get_balance('alice') == 5
    assert list(_stored_files()) == []
    assert leftover_temp_files() == []
