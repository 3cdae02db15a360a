"""
Flask application for the batch image metadata pipeline

Wires the batch and export APIs, initializes the database and starts the
in-process background workers.
"""
import logging
import os
import time
from datetime import datetime
from typing import List, Optional

from flask import Flask, jsonify, send_from_directory
from sqlalchemy import text
from sqlalchemy.exc import ArgumentError, OperationalError

from .pipeline_config import config
from .database_models import db_manager
from .export_api import export_api
from .job_queue import BackgroundWorker, start_background_workers
from .polling_api import polling_api

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(log_file: str = 'metagen.log'):
    """Log to stderr and to ``log_dir``; DEBUG when debug logging is enabled"""
    os.makedirs(config.log_dir, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if config.enable_debug_logging else logging.INFO,
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(os.path.join(config.log_dir, log_file)),
            logging.StreamHandler()
        ]
    )

    for warning in config.validate_configuration():
        logger.warning(f"Configuration warning: {warning}")


def initialize_database_with_retries(max_attempts: int = 5,
                                     initial_delay: float = 1.0) -> bool:
    """
    Initialize database with exponential backoff retry logic

    Returns:
        True if successful, False if all attempts failed
    """
    delay = initial_delay

    for attempt in range(1, max_attempts + 1):
        try:
            logger.info(
                f"Database initialization attempt {attempt}/{max_attempts}...")
            db_manager.create_tables()

            with db_manager.get_session() as session:
                session.execute(text("SELECT 1"))

            logger.info("Database initialized successfully")
            return True

        except ArgumentError as e:
            # Connection string format error - don't retry
            logger.error(f"Invalid database URL format: {e}")
            return False

        except OperationalError as e:
            logger.error(
                f"Database operational error (attempt {attempt}/{max_attempts}): {e}")
            if attempt < max_attempts:
                logger.info(f"Retrying in {delay:.1f} seconds...")
                time.sleep(delay)
                delay = min(delay * 2, 30)

    logger.error(
        f"Failed to initialize database after {max_attempts} attempts")
    return False


def create_app(start_workers: Optional[bool] = None) -> Flask:
    """Create and configure the Flask application

    Args:
        start_workers: run background workers inside this process; defaults to
            ``config.start_workers_in_app``
    """
    if start_workers is None:
        start_workers = config.start_workers_in_app

    app = Flask(__name__)
    app.config.update({
        'SECRET_KEY': config.secret_key,
        'MAX_CONTENT_LENGTH': config.max_upload_size,
        'UPLOAD_FOLDER': config.upload_dir,
    })

    config.create_directories()
    db_initialized = initialize_database_with_retries()
    if not db_initialized:
        logger.warning("Database initialization failed - some features may not work")

    workers: List[BackgroundWorker] = []
    if start_workers and db_initialized:
        logger.info("Starting background workers...")
        workers = start_background_workers(config.batch_workers)

    app.register_blueprint(polling_api)
    app.register_blueprint(export_api)

    app.db_initialized = db_initialized
    app.workers = workers

    # Stored images are served from storage_dir when the public URL is local
    if config.public_base_url.startswith('/'):
        @app.route(f"{config.public_base_url.rstrip('/')}/<path:key>", methods=['GET'])
        def stored_image(key: str):
            return send_from_directory(os.path.abspath(config.storage_dir), key)

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'success': False,
            'error': 'Not found',
            'timestamp': datetime.now().isoformat()
        }), 404

    @app.errorhandler(413)
    def file_too_large(error):
        return jsonify({
            'success': False,
            'error': f'Upload too large. Maximum size: {config.max_upload_size // (1024*1024)}MB',
            'timestamp': datetime.now().isoformat()
        }), 413

    @app.errorhandler(500)
    def server_error(error):
        logger.error(f"Server error: {error}")
        return jsonify({
            'success': False,
            'error': 'Internal server error',
            'timestamp': datetime.now().isoformat()
        }), 500

    return app


def shutdown(app: Flask):
    """Stop in-process workers and release database connections"""
    logger.info("Shutting down metadata pipeline...")
    for worker in getattr(app, 'workers', []):
        worker.stop(timeout=5)
    db_manager.close()
    logger.info("Shutdown complete")
