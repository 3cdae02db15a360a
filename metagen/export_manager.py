"""
Export of batch results: ZIP archive of the successful images and
metadata reports (CSV / JSON / XLSX)
"""
import csv
import io
import json
import logging
import os
import tempfile
import zipfile
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import pandas as pd

from .batch_store import BatchStore, batch_store
from .errors import NoSuccessfulImages
from .pipeline_config import config
from .storage import ImageStorage, image_storage

logger = logging.getLogger(__name__)

# Archives above this size spill from memory to a temporary file
SPOOL_MAX_SIZE = 16 * 1024 * 1024


def _safe_name(name: str) -> str:
    safe = "".join(c for c in name if c.isalnum() or c in (' ', '-', '_')).strip()
    return safe.replace(' ', '_') or 'batch'


def unique_entry_names(filenames: List[str]) -> List[str]:
    """Deterministic archive names: ``a.jpg``, ``a_1.jpg``, ``a_2.jpg`` ..."""
    used = set()
    names = []
    for filename in filenames:
        base = os.path.basename((filename or '').replace('\\', '/')) or 'image'
        stem, ext = os.path.splitext(base)
        candidate = base
        counter = 1
        while candidate.lower() in used:
            candidate = f"{stem}_{counter}{ext}"
            counter += 1
        used.add(candidate.lower())
        names.append(candidate)
    return names


@dataclass
class ZipExport:
    """A finished archive ready to be streamed once"""
    filename: str
    size: int
    entry_count: int
    _file: Any

    @property
    def content_type(self) -> str:
        return 'application/zip'

    def stream(self, chunk_size: Optional[int] = None) -> Iterator[bytes]:
        """Yield the archive in chunks, closing the backing file at the end"""
        chunk_size = chunk_size or config.export_chunk_size
        try:
            self._file.seek(0)
            while True:
                chunk = self._file.read(chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            self._file.close()

    def read(self) -> bytes:
        return b''.join(self.stream())

    def close(self):
        self._file.close()


class ExportManager:
    """Builds downloads from a batch's successful images. Read-only."""

    def __init__(self, store: Optional[BatchStore] = None, storage: Optional[ImageStorage] = None):
        self.store = store or batch_store
        self.storage = storage or image_storage
        self.export_formats = ['csv', 'json', 'xlsx']

    def export_zip(self, batch_id: str, user_id: Optional[str] = None) -> ZipExport:
        """Archive every successful image of a batch under its original filename

        Raises:
            BatchNotFound: no such batch (or not owned by ``user_id``)
            NoSuccessfulImages: the batch has nothing to archive
        """
        batch = self.store.get_batch(batch_id, user_id)
        successful = batch['successful_images']
        if not successful:
            raise NoSuccessfulImages(
                f"Batch {batch_id} has no successful images to export",
                details={'batch_id': batch_id})

        entry_names = unique_entry_names([img.get('image_name') for img in successful])
        spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE)
        written = 0

        try:
            with zipfile.ZipFile(spool, 'w', zipfile.ZIP_DEFLATED) as zip_file:
                for image, entry_name in zip(successful, entry_names):
                    key = image.get('storage_key')
                    if not key or not self.storage.exists(key):
                        logger.warning(
                            f"Stored image for {image.get('image_name')} missing, "
                            f"skipping in export of batch {batch_id}")
                        continue
                    zip_file.write(self.storage.path_for(key), arcname=entry_name)
                    written += 1
        except BaseException:
            spool.close()
            raise

        if not written:
            spool.close()
            raise NoSuccessfulImages(
                f"None of the stored images of batch {batch_id} are available",
                details={'batch_id': batch_id})

        size = spool.tell()
        logger.info(f"Exported {written} images of batch {batch_id} ({size} bytes)")
        return ZipExport(filename=f"{_safe_name(batch['name'])}.zip",
                         size=size, entry_count=written, _file=spool)

    def export_metadata(self, batch_id: str, format_type: str = 'csv',
                        user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Export the generated metadata of a batch

        Args:
            batch_id: Batch identifier
            format_type: Export format ('csv', 'json', 'xlsx')
            user_id: Owner; other users' batches are reported as not found

        Returns:
            Dictionary with export data, filename and content type
        """
        if format_type not in self.export_formats:
            raise ValueError(
                f"Unsupported format: {format_type}. Supported: {self.export_formats}")

        batch = self.store.get_batch(batch_id, user_id)
        if not batch['successful_images']:
            raise NoSuccessfulImages(
                f"Batch {batch_id} has no generated metadata",
                details={'batch_id': batch_id})

        rows = self._metadata_rows(batch)
        if format_type == 'csv':
            data = self._generate_csv_data(rows)
        elif format_type == 'json':
            data = self._generate_json_data(rows, batch)
        else:
            data = self._generate_xlsx_data(rows, batch)

        return {
            'data': data,
            'filename': f"{_safe_name(batch['name'])}_metadata.{format_type}",
            'content_type': self._get_content_type(format_type),
            'record_count': len(rows),
        }

    @staticmethod
    def _metadata_rows(batch: Dict[str, Any]) -> List[Dict[str, str]]:
        names = unique_entry_names(
            [img.get('image_name') for img in batch['successful_images']])
        rows = []
        for image, filename in zip(batch['successful_images'], names):
            metadata = image.get('metadata') or {}
            rows.append({
                'filename': filename,
                'title': metadata.get('title', ''),
                'description': metadata.get('description', ''),
                'keywords': ', '.join(metadata.get('keywords') or []),
            })
        return rows

    @staticmethod
    def _generate_csv_data(rows: List[Dict[str, str]]) -> str:
        csv_buffer = io.StringIO()
        writer = csv.DictWriter(
            csv_buffer, fieldnames=['filename', 'title', 'description', 'keywords'])
        writer.writeheader()
        writer.writerows(rows)
        return csv_buffer.getvalue()

    @staticmethod
    def _generate_json_data(rows: List[Dict[str, str]], batch: Dict[str, Any]) -> str:
        data = {
            'metadata': {
                'batch_id': batch['batch_id'],
                'batch_name': batch['name'],
                'export_date': datetime.now().isoformat(),
                'total_records': len(rows),
                'batch_status': batch['status'],
            },
            'results': rows,
        }
        return json.dumps(data, indent=2, ensure_ascii=False)

    @staticmethod
    def _generate_xlsx_data(rows: List[Dict[str, str]], batch: Dict[str, Any]) -> bytes:
        df = pd.DataFrame(rows, columns=['filename', 'title', 'description', 'keywords'])
        df.columns = ['Filename', 'Title', 'Description', 'Keywords']

        excel_buffer = io.BytesIO()
        with pd.ExcelWriter(excel_buffer, engine='openpyxl') as writer:
            df.to_excel(writer, sheet_name='Metadata', index=False)
            pd.DataFrame([
                ['Batch ID', batch['batch_id']],
                ['Batch Name', batch['name']],
                ['Export Date', datetime.now().isoformat()],
                ['Total Records', len(rows)],
                ['Batch Status', batch['status']],
            ], columns=['Property', 'Value']).to_excel(
                writer, sheet_name='Batch', index=False)

        excel_buffer.seek(0)
        return excel_buffer.getvalue()

    @staticmethod
    def _get_content_type(format_type: str) -> str:
        """Get content type for format"""
        content_types = {
            'csv': 'text/csv',
            'json': 'application/json',
            'xlsx': 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
        }
        return content_types.get(format_type, 'application/octet-stream')


# Global export manager instance
export_manager = ExportManager()
