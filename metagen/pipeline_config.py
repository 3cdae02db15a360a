"""
Configuration for the batch image metadata pipeline.
Supports PostgreSQL/SQLite, Redis, Gemini / OpenRouter backends and local image storage.
"""
import os
from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class PipelineConfig(BaseSettings):
    """Pipeline configuration, read from the environment and .env"""

    model_config = SettingsConfigDict(
        env_file='.env', case_sensitive=False, extra='ignore')

    # Generation backend selection: "gemini" or "openrouter"
    generation_backend: str = Field("gemini")

    # Gemini (Google Generative Language REST API)
    gemini_api_key: str = Field("")
    gemini_model: str = Field("gemini-2.0-flash")
    gemini_api_base: str = Field(
        "https://generativelanguage.googleapis.com/v1beta")

    # OpenRouter (OpenAI-compatible chat completions)
    openrouter_api_key: str = Field("")
    openrouter_model: str = Field("google/gemini-2.0-flash-001")
    openrouter_api_base: str = Field("https://openrouter.ai/api/v1")
    openrouter_referer: str = Field("https://metagen.local")
    openrouter_site_title: str = Field("Image SEO Metadata Pipeline")

    # Prompt shaping
    title_length: int = Field(90)
    description_length: int = Field(120)
    keyword_count: int = Field(25)
    generation_temperature: float = Field(0.1)

    # Database Configuration
    database_url: str = Field("sqlite:///./metagen.db")
    database_pool_size: int = Field(10)
    database_max_overflow: int = Field(20)
    database_echo: bool = Field(False)

    # Redis Configuration (empty url keeps the job queue in-process)
    redis_url: str = Field("")
    redis_password: Optional[str] = Field(None)
    redis_socket_timeout: int = Field(5)
    job_queue_name: str = Field("metagen_jobs")

    # Batch processing
    # Images of one batch in flight at the same time
    max_concurrent_workers: int = Field(5)
    # Background threads pulling batches off the job queue
    batch_workers: int = Field(2)
    # Run those threads inside the web process (off when server/run_workers.py is used)
    start_workers_in_app: bool = Field(True)
    max_images_per_batch: int = Field(500)
    token_cost_per_image: int = Field(1)
    # Per-image generation timeout, seconds
    request_timeout: int = Field(90)

    # Image handling
    resize_max_width: int = Field(1500)
    supported_extensions: str = Field(".jpg,.jpeg,.png,.webp")

    # Storage Configuration
    upload_dir: str = Field("./uploads")
    temp_dir: str = Field("./temp")
    storage_dir: str = Field("./storage")
    log_dir: str = Field("./logs")
    public_base_url: str = Field("/files")

    # Application Configuration
    secret_key: str = Field("dev-secret-key-change-in-production")
    api_access_key: str = Field("")
    max_upload_size: int = Field(104857600)  # 100MB

    # Export
    export_chunk_size: int = Field(65536)

    # Development/Testing
    development_mode: bool = Field(False)
    enable_debug_logging: bool = Field(False)

    @property
    def supported_extensions_list(self) -> List[str]:
        """Return normalized list of accepted upload extensions"""
        return [e.strip().lower() for e in self.supported_extensions.split(',') if e.strip()]

    @property
    def is_postgresql(self) -> bool:
        """Check if using PostgreSQL"""
        return self.database_url.startswith('postgresql')

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith('sqlite')

    @property
    def is_redis_available(self) -> bool:
        """Check if Redis is configured"""
        return bool(self.redis_url)

    def create_directories(self):
        """Create necessary directories"""
        directories = [
            self.upload_dir,
            self.temp_dir,
            self.storage_dir,
            self.log_dir
        ]

        for directory in directories:
            os.makedirs(directory, exist_ok=True)

    def get_database_config(self) -> dict:
        """Get database configuration for SQLAlchemy"""
        if self.is_sqlite:
            # SQLite connections are shared with worker threads
            return {
                'url': self.database_url,
                'echo': self.database_echo,
                'connect_args': {'check_same_thread': False, 'timeout': 30},
            }

        return {
            'url': self.database_url,
            'pool_size': self.database_pool_size,
            'max_overflow': self.database_max_overflow,
            'echo': self.database_echo,
            'pool_pre_ping': True,
            'pool_recycle': 3600
        }

    def get_redis_config(self) -> dict:
        """Get Redis configuration"""
        config = {
            'url': self.redis_url,
            'socket_timeout': self.redis_socket_timeout,
            'decode_responses': True
        }

        if self.redis_password:
            config['password'] = self.redis_password

        return config

    def validate_configuration(self) -> List[str]:
        """Validate configuration and return warnings"""
        warnings = []

        if not self.is_postgresql and not self.development_mode:
            warnings.append("PostgreSQL recommended for production use")

        if not self.is_redis_available:
            warnings.append(
                "REDIS_URL not set - batches are dispatched in-process only")

        if self.generation_backend not in ("gemini", "openrouter"):
            warnings.append(
                f"Invalid GENERATION_BACKEND '{self.generation_backend}' - must be 'gemini' or 'openrouter'")

        if self.generation_backend == "gemini" and not self.gemini_api_key:
            warnings.append(
                "GEMINI_API_KEY not set - metadata generation will fail")

        if self.generation_backend == "openrouter" and not self.openrouter_api_key:
            warnings.append(
                "OPENROUTER_API_KEY not set - metadata generation will fail")

        if self.max_concurrent_workers < 1:
            warnings.append("MAX_CONCURRENT_WORKERS must be at least 1")
        elif self.max_concurrent_workers > 50:
            warnings.append(
                "High concurrent workers may overload the generation backend")

        if self.token_cost_per_image < 1:
            warnings.append("TOKEN_COST_PER_IMAGE must be at least 1")

        return warnings


# Global configuration instance
config = PipelineConfig()

# Validate configuration on import
if config.enable_debug_logging:
    warnings = config.validate_configuration()
    if warnings:
        import logging
        logger = logging.getLogger(__name__)
        for warning in warnings:
            logger.warning(f"Configuration warning: {warning}")
