import io
import json
import zipfile

import pandas as pd
import pytest

from metagen.batch_store import BatchStore
from metagen.errors import BatchNotFound, NoSuccessfulImages
from metagen.executor import FailureResult, ImageResult
from metagen.export_manager import ExportManager, unique_entry_names
from metagen.generation_client import Metadata
from metagen.pipeline_config import config
from metagen.storage import ImageStorage


@pytest.fixture
def store():
    return BatchStore()


@pytest.fixture
def storage():
    return ImageStorage(config.storage_dir, '/files')


@pytest.fixture
def exporter(store, storage):
    return ExportManager(store, storage)


def _add_success(store, storage, batch_id, image_id, name, make_image):
    source = make_image(f'{image_id}-{name}')
    key = storage.save(source, 'alice', batch_id, image_id, name)
    store.append_outcome(batch_id, ImageResult(
        image_id=image_id, image_name=name, image_url=storage.url_for(key),
        storage_key=key, size_bytes=1,
        metadata=Metadata(f'Title {image_id}', f'About {image_id}', ('tree', 'leaf'))),
        tokens_debited=1)
    return key


def test_unique_entry_names():
    assert unique_entry_names(['a.jpg', 'b.jpg', 'a.jpg', 'A.JPG', 'a.jpg']) == \
        ['a.jpg', 'b.jpg', 'a_1.jpg', 'A_2.JPG', 'a_3.jpg']
    assert unique_entry_names(['dir/x.png', '', None]) == ['x.png', 'image', 'image_1']


def test_batch_without_successes_produces_no_archive(store, exporter):
    batch_id = store.create_batch('alice', 2)['batch_id']
    for image_id in ('i1', 'i2'):
        store.append_outcome(batch_id, FailureResult(
            image_id=image_id, filename=f'{image_id}.jpg', error_reason='GenerationError'))

    with pytest.raises(NoSuccessfulImages) as exc:
        exporter.export_zip(batch_id, 'alice')
    assert exc.value.to_dict()['error_code'] == 'NoSuccessfulImages'


def test_unknown_or_foreign_batch(store, exporter):
    batch_id = store.create_batch('alice', 1)['batch_id']

    with pytest.raises(BatchNotFound):
        exporter.export_zip('missing-batch')
    with pytest.raises(BatchNotFound):
        exporter.export_zip(batch_id, 'mallory')


def test_zip_contains_successes_with_deduplicated_names(store, storage, exporter, make_image):
    batch_id = store.create_batch('alice', 3, name='Spring set')['batch_id']
    _add_success(store, storage, batch_id, 'i1', 'tree.jpg', make_image)
    _add_success(store, storage, batch_id, 'i2', 'tree.jpg', make_image)
    store.append_outcome(batch_id, FailureResult(
        image_id='i3', filename='bad.jpg', error_reason='DecodeError'))

    export = exporter.export_zip(batch_id, 'alice')
    payload = export.read()

    assert export.filename == 'Spring_set.zip'
    assert export.entry_count == 2
    assert export.size == len(payload)
    with zipfile.ZipFile(io.BytesIO(payload)) as archive:
        assert archive.namelist() == ['tree.jpg', 'tree_1.jpg']
        assert archive.testzip() is None


def test_zip_skips_missing_stored_files(store, storage, exporter, make_image):
    batch_id = store.create_batch('alice', 2)['batch_id']
    gone = _add_success(store, storage, batch_id, 'i1', 'gone.jpg', make_image)
    _add_success(store, storage, batch_id, 'i2', 'kept.jpg', make_image)
    storage.delete(gone)

    export = exporter.export_zip(batch_id)

    with zipfile.ZipFile(io.BytesIO(export.read())) as archive:
        assert archive.namelist() == ['kept.jpg']


def test_zip_with_every_file_missing(store, storage, exporter, make_image):
    batch_id = store.create_batch('alice', 1)['batch_id']
    storage.delete(_add_success(store, storage, batch_id, 'i1', 'lost.jpg', make_image))

    with pytest.raises(NoSuccessfulImages):
        exporter.export_zip(batch_id)


def test_stream_yields_chunks(store, storage, exporter, make_image):
    batch_id = store.create_batch('alice', 1)['batch_id']
    _add_success(store, storage, batch_id, 'i1', 'big.jpg', make_image)

    export = exporter.export_zip(batch_id)
    chunks = list(export.stream(chunk_size=64))

    assert len(chunks) > 1
    assert all(len(chunk) <= 64 for chunk in chunks)
    assert sum(len(chunk) for chunk in chunks) == export.size


def test_export_leaves_batch_untouched(store, storage, exporter, make_image):
    batch_id = store.create_batch('alice', 1)['batch_id']
    _add_success(store, storage, batch_id, 'i1', 'same.jpg', make_image)
    before = store.get_batch(batch_id)

    exporter.export_zip(batch_id).close()
    exporter.export_metadata(batch_id, 'json')

    assert store.get_batch(batch_id) == before


def test_metadata_csv(store, storage, exporter, make_image):
    batch_id = store.create_batch('alice', 1)['batch_id']
    _add_success(store, storage, batch_id, 'i1', 'oak.jpg', make_image)

    export = exporter.export_metadata(batch_id, 'csv', 'alice')

    assert export['content_type'] == 'text/csv'
    assert export['record_count'] == 1
    assert export['filename'].endswith('_metadata.csv')
    lines = export['data'].strip().splitlines()
    assert lines[0] == 'filename,title,description,keywords'
    assert lines[1] == 'oak.jpg,Title i1,About i1,"tree, leaf"'


def test_metadata_json(store, storage, exporter, make_image):
    batch_id = store.create_batch('alice', 1, name='Oaks')['batch_id']
    _add_success(store, storage, batch_id, 'i1', 'oak.jpg', make_image)

    data = json.loads(exporter.export_metadata(batch_id, 'json')['data'])

    assert data['metadata']['batch_name'] == 'Oaks'
    assert data['metadata']['total_records'] == 1
    assert data['results'][0]['keywords'] == 'tree, leaf'


def test_metadata_xlsx(store, storage, exporter, make_image):
    batch_id = store.create_batch('alice', 1)['batch_id']
    _add_success(store, storage, batch_id, 'i1', 'oak.jpg', make_image)

    export = exporter.export_metadata(batch_id, 'xlsx')
    frame = pd.read_excel(io.BytesIO(export['data']), sheet_name='Metadata')

    assert list(frame.columns) == ['Filename', 'Title', 'Description', 'Keywords']
    assert frame.iloc[0]['Filename'] == 'oak.jpg'


def test_metadata_rejects_unknown_format(store, exporter):
    batch_id = store.create_batch('alice', 1)['batch_id']

    with pytest.raises(ValueError):
        exporter.export_metadata(batch_id, 'pdf')
