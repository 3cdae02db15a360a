"""
Batch API: upload, polling, listing, renaming and token balance endpoints
"""
import logging
import os
import uuid
from datetime import datetime
from typing import List, Tuple

from flask import Blueprint, jsonify, request
from sqlalchemy import text
from werkzeug.utils import secure_filename

from .auth import current_user_id, require_user
from .batch_orchestrator import batch_orchestrator
from .batch_store import batch_store
from .database_models import BatchStatus, db_manager
from .errors import BatchNotFound
from .executor import remove_temp_file
from .job_queue import job_queue
from .pipeline_config import config
from .token_ledger import token_ledger

logger = logging.getLogger(__name__)

# Create Blueprint for polling API
polling_api = Blueprint('polling_api', __name__, url_prefix='/api/v1')


def _error(message: str, status: int, error_code: str = None):
    body = {
        'success': False,
        'error': message,
        'timestamp': datetime.now().isoformat()
    }
    if error_code:
        body['error_code'] = error_code
    return jsonify(body), status


def _ok(data, status: int = 200):
    return jsonify({
        'success': True,
        'data': data,
        'timestamp': datetime.now().isoformat()
    }), status


@polling_api.route('/ping', methods=['GET'])
def ping():
    """Lightweight liveness probe that does not touch DB/Redis"""
    return _ok({'status': 'ok'})


def _save_uploads(files) -> List[Tuple[str, str]]:
    """Write uploaded files to ``upload_dir``; returns (path, original filename) pairs"""
    allowed = config.supported_extensions_list
    for file in files:
        ext = os.path.splitext(file.filename or '')[1].lower()
        if ext not in allowed:
            raise ValueError(
                f"Unsupported file type for {file.filename!r}. Allowed: {', '.join(allowed)}")

    os.makedirs(config.upload_dir, exist_ok=True)
    saved = []
    try:
        for file in files:
            safe_name = secure_filename(file.filename) or 'image'
            path = os.path.join(config.upload_dir, f"{uuid.uuid4().hex}_{safe_name}")
            file.save(path)
            saved.append((path, os.path.basename(file.filename)))
    except OSError:
        for path, _ in saved:
            remove_temp_file(path)
        raise
    return saved


@polling_api.route('/batches', methods=['POST'])
@require_user
def create_batch():
    """Upload images and start a new batch"""
    files = [f for f in request.files.getlist('images') + request.files.getlist('images[]')
             if f and f.filename]
    if not files:
        return _error('No images uploaded', 400)

    user_id = current_user_id()
    saved = []
    try:
        saved = _save_uploads(files)
        result = batch_orchestrator.start_batch(
            user_id, saved,
            name=request.form.get('name'),
            retry_of=request.form.get('retry_of'))
        return _ok(result, 202)

    except BatchNotFound as e:
        for path, _ in saved:
            remove_temp_file(path)
        return _error(e.message, 404, e.kind)

    except ValueError as e:
        for path, _ in saved:
            remove_temp_file(path)
        return _error(str(e), 400)

    except Exception as e:
        logger.error(f"Error creating batch for user {user_id}: {e}")
        for path, _ in saved:
            remove_temp_file(path)
        return _error(str(e), 500)


@polling_api.route('/batches', methods=['GET'])
@require_user
def list_batches():
    """List the caller's batches, newest first"""
    try:
        limit = min(request.args.get('limit', 50, type=int), 100)
        offset = max(request.args.get('offset', 0, type=int), 0)
        status_filter = request.args.get('status')
        if status_filter and status_filter not in [s.value for s in BatchStatus]:
            raise ValueError(f"Unknown status filter: {status_filter}")

        batches = batch_store.list_batches(
            current_user_id(), limit=limit, offset=offset, status_filter=status_filter)

        return _ok({
            'batches': batches,
            'count': len(batches),
            'limit': limit,
            'offset': offset,
            'status_filter': status_filter
        })

    except ValueError as e:
        return _error(str(e), 400)

    except Exception as e:
        logger.error(f"Error listing batches: {e}")
        return _error(str(e), 500)


@polling_api.route('/batches/<batch_id>', methods=['GET'])
@require_user
def get_batch(batch_id: str):
    """Latest state of a batch, including every recorded outcome"""
    try:
        batch = batch_store.get_batch(batch_id, current_user_id())
        response, status = _ok(batch)
        response.headers['X-Polling-Interval'] = PollingIntervalCalculator.get_interval_header(
            batch['status'], batch['progress_percentage'],
            batch['status'] == BatchStatus.PROCESSING.value)
        return response, status

    except BatchNotFound as e:
        return _error(e.message, 404, e.kind)

    except Exception as e:
        logger.error(f"Error getting batch {batch_id}: {e}")
        return _error(str(e), 500)


@polling_api.route('/batches/<batch_id>', methods=['PATCH'])
@require_user
def rename_batch(batch_id: str):
    """Rename a batch"""
    try:
        data = request.get_json(silent=True) or {}
        batch = batch_store.rename_batch(batch_id, current_user_id(), data.get('name', ''))
        return _ok(batch)

    except BatchNotFound as e:
        return _error(e.message, 404, e.kind)

    except ValueError as e:
        return _error(str(e), 400)

    except Exception as e:
        logger.error(f"Error renaming batch {batch_id}: {e}")
        return _error(str(e), 500)


@polling_api.route('/tokens', methods=['GET'])
@require_user
def get_tokens():
    """Caller's token balance and recent ledger history"""
    try:
        user_id = current_user_id()
        limit = min(request.args.get('limit', 50, type=int), 200)
        return _ok({
            'user_id': user_id,
            'available_tokens': token_ledger.get_balance(user_id),
            'token_cost_per_image': config.token_cost_per_image,
            'history': token_ledger.get_history(user_id, limit=limit),
        })

    except Exception as e:
        logger.error(f"Error reading tokens: {e}")
        return _error(str(e), 500)


@polling_api.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    try:
        with db_manager.get_session() as session:
            session.execute(text("SELECT 1")).fetchone()

        if job_queue.is_distributed:
            job_queue.redis_client.ping()

        return _ok({
            'status': 'healthy',
            'database': 'connected',
            'redis': 'connected' if job_queue.is_distributed else 'not configured',
            'queue': job_queue.get_queue_stats(),
            'config': {
                'generation_backend': config.generation_backend,
                'max_concurrent_workers': config.max_concurrent_workers,
                'token_cost_per_image': config.token_cost_per_image,
            }
        })

    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return jsonify({
            'success': False,
            'error': str(e),
            'status': 'unhealthy',
            'timestamp': datetime.now().isoformat()
        }), 500


# Error handlers
@polling_api.errorhandler(404)
def not_found(error):
    return _error('Endpoint not found', 404)


@polling_api.errorhandler(405)
def method_not_allowed(error):
    return _error('Method not allowed', 405)


@polling_api.errorhandler(413)
def payload_too_large(error):
    return _error('File too large', 413)


class PollingIntervalCalculator:
    """Smart polling interval calculator based on batch status"""

    @staticmethod
    def get_recommended_interval(batch_status: str, progress_percentage: float,
                                 is_active: bool) -> int:
        """
        Get recommended polling interval in seconds

        Args:
            batch_status: Current batch status
            progress_percentage: Completion percentage (0-100)
            is_active: Whether batch is actively processing

        Returns:
            Recommended interval in seconds
        """
        if not is_active:
            # Finished batches no longer change
            return 30

        if progress_percentage < 10:
            return 2
        elif progress_percentage < 90:
            return 5
        else:
            # Near completion - more frequent for completion detection
            return 2

    @staticmethod
    def get_interval_header(batch_status: str, progress_percentage: float,
                            is_active: bool) -> str:
        """Get HTTP header value for recommended polling interval"""
        interval = PollingIntervalCalculator.get_recommended_interval(
            batch_status, progress_percentage, is_active
        )
        return str(interval)
