"""
Local filesystem storage for successfully processed images.

Layout: ``<storage_dir>/<user_id>/<batch_id>/<image_id>_<safe filename>``.
Images are addressed by a storage key relative to ``storage_dir``; the public
URL is the key appended to ``config.public_base_url``.
"""
import logging
import os
import shutil
from typing import Optional

from werkzeug.utils import secure_filename

from .errors import StorageIOError
from .pipeline_config import config

logger = logging.getLogger(__name__)


class ImageStorage:
    """Persists original uploads of successful images"""

    def __init__(self, root_dir: Optional[str] = None, base_url: Optional[str] = None):
        self.root_dir = os.path.abspath(root_dir or config.storage_dir)
        self.base_url = (base_url if base_url is not None
                         else config.public_base_url).rstrip('/')

    def build_key(self, user_id: str, batch_id: str, image_id: str, filename: str) -> str:
        safe_name = secure_filename(filename) or 'image'
        return '/'.join([secure_filename(user_id) or 'anonymous',
                         batch_id, f"{image_id}_{safe_name}"])

    def path_for(self, key: str) -> str:
        """Absolute path of a storage key, refusing keys that escape the root"""
        path = os.path.abspath(os.path.join(self.root_dir, *key.split('/')))
        if os.path.commonpath([path, self.root_dir]) != self.root_dir:
            raise StorageIOError(f"Storage key outside of storage root: {key}")
        return path

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    def save(self, source_path: str, user_id: str, batch_id: str,
             image_id: str, filename: str) -> str:
        """Copy ``source_path`` into storage and return its key"""
        key = self.build_key(user_id, batch_id, image_id, filename)
        target = self.path_for(key)
        try:
            os.makedirs(os.path.dirname(target), exist_ok=True)
            shutil.copyfile(source_path, target)
        except OSError as e:
            if os.path.exists(target):
                os.remove(target)
            raise StorageIOError(f"Failed to store {filename}: {e}")

        logger.debug(f"Stored {filename} as {key}")
        return key

    def exists(self, key: str) -> bool:
        return os.path.isfile(self.path_for(key))

    def open(self, key: str):
        """Open a stored image for binary reading"""
        return open(self.path_for(key), 'rb')

    def delete(self, key: str) -> bool:
        """Remove a stored image; returns False when it was already gone"""
        path = self.path_for(key)
        try:
            os.remove(path)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageIOError(f"Failed to delete stored image {key}: {e}")


# Global storage instance
image_storage = ImageStorage()
