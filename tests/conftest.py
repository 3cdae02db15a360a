"""
Pytest configuration file.
Points every path and the database at a throw-away directory before any
metagen import, and provides shared fixtures.
"""
import asyncio
import os
import shutil
import sys
import tempfile
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

# Set environment variables for testing before any metagen imports
_TEST_ROOT = tempfile.mkdtemp(prefix='metagen-tests-')
os.environ['DATABASE_URL'] = f"sqlite:///{_TEST_ROOT}/metagen-test.db"
os.environ['REDIS_URL'] = ''
os.environ['STORAGE_DIR'] = os.path.join(_TEST_ROOT, 'storage')
os.environ['UPLOAD_DIR'] = os.path.join(_TEST_ROOT, 'uploads')
os.environ['TEMP_DIR'] = os.path.join(_TEST_ROOT, 'temp')
os.environ['LOG_DIR'] = os.path.join(_TEST_ROOT, 'logs')
os.environ['API_ACCESS_KEY'] = ''
os.environ['START_WORKERS_IN_APP'] = 'false'
os.environ['GENERATION_BACKEND'] = 'gemini'
os.environ['GEMINI_API_KEY'] = 'test-key'
os.environ['TOKEN_COST_PER_IMAGE'] = '1'
os.environ['MAX_CONCURRENT_WORKERS'] = '3'

import pytest
from PIL import Image

from metagen.database_models import db_manager
from metagen.generation_client import Metadata
from metagen.pipeline_config import config


class FakeGenerationClient:
    """Stands in for the AI backend.

    ``failures`` maps a filename fragment to the exception raised for it,
    ``delays`` maps a fragment to seconds slept before answering.
    """

    def __init__(self, failures=None, delays=None):
        self.failures = failures or {}
        self.delays = delays or {}
        self.calls = []
        self.closed = False

    def _match(self, mapping, path):
        name = os.path.basename(path)
        for fragment, value in mapping.items():
            if fragment in name:
                return value
        return None

    async def generate(self, image_path):
        self.calls.append(image_path)
        delay = self._match(self.delays, image_path)
        if delay:
            await asyncio.sleep(delay)
        error = self._match(self.failures, image_path)
        if error:
            raise error
        stem = os.path.basename(image_path).rsplit('.', 1)[0]
        return Metadata(
            title=f"Title for {stem}",
            description=f"Description for {stem}",
            keywords=('nature', 'landscape', 'sky'),
        )

    async def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def fresh_state():
    """Empty database tables and working directories for every test"""
    db_manager.drop_tables()
    db_manager.create_tables()
    for directory in (config.storage_dir, config.upload_dir, config.temp_dir):
        shutil.rmtree(directory, ignore_errors=True)
        os.makedirs(directory, exist_ok=True)
    yield


@pytest.fixture
def make_image():
    """Create an image file in the upload directory and return its path"""
    def _make(name='photo.jpg', width=800, height=600, color=(40, 120, 200)):
        path = os.path.join(config.upload_dir, name)
        fmt = 'PNG' if name.lower().endswith('.png') else 'JPEG'
        Image.new('RGB', (width, height), color).save(path, format=fmt)
        return path
    return _make


@pytest.fixture
def fake_client():
    return FakeGenerationClient()


def leftover_temp_files():
    """Files remaining in upload and resize working directories"""
    leftovers = []
    for directory in (config.upload_dir, config.temp_dir):
        for root, _dirs, files in os.walk(directory):
            leftovers.extend(os.path.join(root, f) for f in files)
    return leftovers
