"""
Export endpoints: ZIP download of a batch's images and metadata reports
"""
import logging
from datetime import datetime

from flask import Blueprint, Response, jsonify, request, stream_with_context

from .auth import current_user_id, require_user
from .errors import PipelineError
from .export_manager import export_manager

logger = logging.getLogger(__name__)

# Create Blueprint for export API
export_api = Blueprint('export_api', __name__, url_prefix='/images')


def _export_error(error: PipelineError):
    """BatchNotFound / NoSuccessfulImages are a not-found, never a crash"""
    body = error.to_dict()
    body.update({'success': False, 'timestamp': datetime.now().isoformat()})
    return jsonify(body), 404


@export_api.route('/download/<batch_id>', methods=['GET'])
@require_user
def download_batch(batch_id: str):
    """Stream a ZIP of every successfully processed image of the batch"""
    try:
        archive = export_manager.export_zip(batch_id, current_user_id())
    except PipelineError as e:
        return _export_error(e)
    except Exception as e:
        logger.error(f"Error exporting batch {batch_id}: {e}")
        return jsonify({
            'success': False,
            'error': str(e),
            'timestamp': datetime.now().isoformat()
        }), 500

    return Response(
        stream_with_context(archive.stream()),
        mimetype=archive.content_type,
        headers={
            'Content-Disposition': f'attachment; filename="{archive.filename}"',
            'Content-Length': str(archive.size),
            'X-Image-Count': str(archive.entry_count),
        }
    )


@export_api.route('/metadata/<batch_id>', methods=['GET'])
@require_user
def download_metadata(batch_id: str):
    """Export generated titles, descriptions and keywords of a batch"""
    format_type = request.args.get('format', 'csv').lower()
    try:
        export_result = export_manager.export_metadata(
            batch_id, format_type=format_type, user_id=current_user_id())
    except PipelineError as e:
        return _export_error(e)
    except ValueError as e:
        return jsonify({
            'success': False,
            'error': str(e),
            'timestamp': datetime.now().isoformat()
        }), 400
    except Exception as e:
        logger.error(f"Error exporting metadata of batch {batch_id}: {e}")
        return jsonify({
            'success': False,
            'error': str(e),
            'timestamp': datetime.now().isoformat()
        }), 500

    data = export_result['data']
    body = data if isinstance(data, bytes) else data.encode('utf-8')
    return Response(
        body,
        mimetype=export_result['content_type'],
        headers={
            'Content-Disposition': f'attachment; filename="{export_result["filename"]}"',
            'Content-Length': str(len(body))
        }
    )


# Error handlers for export API
@export_api.errorhandler(404)
def export_not_found(error):
    return jsonify({
        'success': False,
        'error': 'Export resource not found',
        'timestamp': datetime.now().isoformat()
    }), 404


@export_api.after_request
def add_export_headers(response):
    """Add helpful headers to export responses"""
    response.headers['Cache-Control'] = 'no-store'
    response.headers['X-Export-API-Version'] = '1.0'
    return response
