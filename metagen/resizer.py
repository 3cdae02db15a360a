"""
Width-bounded image resizing ahead of metadata generation.

Wide images are scaled down to ``config.resize_max_width`` keeping the aspect
ratio; anything narrower is copied through untouched. The input file is never
modified and the caller owns both the input and the returned output file.
"""
import logging
import os
import shutil
import uuid
from typing import Optional

from PIL import Image, UnidentifiedImageError

from .errors import DecodeError, StorageIOError
from .pipeline_config import config

logger = logging.getLogger(__name__)

# OSErrors that point at the filesystem rather than at the image bytes
_FILESYSTEM_ERRORS = (FileNotFoundError, PermissionError, IsADirectoryError)


def _output_path_for(input_path: str, output_dir: str) -> str:
    base = os.path.basename(input_path)
    return os.path.join(output_dir, f"resized_{uuid.uuid4().hex[:12]}_{base}")


def _remove_partial(path: str):
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as e:
        logger.warning(f"Could not remove partial resize output {path}: {e}")


def _decode(input_path: str) -> Image.Image:
    name = os.path.basename(input_path)
    try:
        img = Image.open(input_path)
        img.load()
        return img
    except (UnidentifiedImageError, Image.DecompressionBombError, SyntaxError) as e:
        raise DecodeError(f"Not a readable image: {name} ({e})")
    except _FILESYSTEM_ERRORS as e:
        raise StorageIOError(f"Cannot read {name}: {e}")
    except OSError as e:
        # Pillow reports truncated / corrupt pixel data as a plain OSError
        raise DecodeError(f"Corrupt image data in {name}: {e}")


def resize(input_path: str, output_dir: Optional[str] = None,
           max_width: Optional[int] = None) -> str:
    """Resize ``input_path`` into ``output_dir`` and return the new file path.

    Raises:
        DecodeError: the input cannot be decoded as an image
        StorageIOError: reading or writing the filesystem failed
    """
    max_width = max_width or config.resize_max_width
    output_dir = output_dir or os.path.join(config.temp_dir, 'resized')

    img = _decode(input_path)
    with img:
        width, height = img.size
        image_format = img.format

        try:
            os.makedirs(output_dir, exist_ok=True)
        except OSError as e:
            raise StorageIOError(
                f"Cannot create resize directory {output_dir}: {e}")

        output_path = _output_path_for(input_path, output_dir)

        try:
            if width <= max_width:
                shutil.copyfile(input_path, output_path)
                logger.debug(f"Image {input_path} is {width}px wide, copied as is")
                return output_path

            new_height = max(1, round(height * max_width / width))
            resized = img.resize((max_width, new_height), Image.LANCZOS)

            save_kwargs = {}
            if image_format == 'JPEG':
                if resized.mode not in ('RGB', 'L'):
                    resized = resized.convert('RGB')
                save_kwargs = {'quality': 90, 'optimize': True}

            resized.save(output_path, format=image_format, **save_kwargs)
            logger.debug(
                f"Resized {input_path} from {width}x{height} to {max_width}x{new_height}")
            return output_path

        except (OSError, ValueError, KeyError) as e:
            # ValueError / KeyError: Pillow has no writer for this format
            _remove_partial(output_path)
            raise StorageIOError(
                f"Failed to write resized copy of {os.path.basename(input_path)}: {e}")
