#!/usr/bin/env python3
"""
Admin script for the image metadata pipeline

- Database initialization / teardown
- Directory layout
- Environment and connectivity health check
- Granting tokens to a user (stand-in for the billing system)
"""
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy import text

load_dotenv()

logging.basicConfig(level=logging.INFO,
                    format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


ENV_EXAMPLE = """# Generation backend: gemini or openrouter
GENERATION_BACKEND=gemini
GEMINI_API_KEY=
GEMINI_MODEL=gemini-2.0-flash
OPENROUTER_API_KEY=
OPENROUTER_MODEL=google/gemini-2.0-flash-001

# Storage
DATABASE_URL=sqlite:///./metagen.db
REDIS_URL=
STORAGE_DIR=./storage
UPLOAD_DIR=./uploads
TEMP_DIR=./temp
LOG_DIR=./logs

# Processing
MAX_CONCURRENT_WORKERS=5
BATCH_WORKERS=2
TOKEN_COST_PER_IMAGE=1
REQUEST_TIMEOUT=90

# Security
SECRET_KEY=change-me
API_ACCESS_KEY=
"""


class MetagenAdmin:
    """Handles pipeline setup and maintenance"""

    def __init__(self):
        self.project_root = Path(__file__).parent

    def check_prerequisites(self):
        """Check interpreter version"""
        if sys.version_info < (3, 9):
            raise RuntimeError("Python 3.9 or higher is required")
        logger.info(
            f"✓ Python {sys.version_info.major}.{sys.version_info.minor}")
        return True

    def check_database_connection(self):
        """Check that the configured database answers"""
        logger.info("Testing database connection...")
        from metagen.database_models import db_manager

        try:
            with db_manager.get_session() as session:
                session.execute(text("SELECT 1"))
            logger.info("✓ Database reachable")
            return True
        except Exception as e:
            logger.error(f"❌ Database connection failed: {e}")
            return False

    def check_redis_connection(self):
        """Check Redis connection (optional component)"""
        from metagen.pipeline_config import config

        if not config.is_redis_available:
            logger.info("- REDIS_URL not set, job queue runs in-process")
            return True

        logger.info("Testing Redis connection...")
        import redis

        try:
            client = redis.from_url(**config.get_redis_config())
            client.ping()
            info = client.info()
            logger.info(f"✓ Connected to Redis: {info['redis_version']}")
            return True
        except redis.RedisError as e:
            logger.error(f"❌ Redis connection failed: {e}")
            return False

    def check_configuration(self):
        from metagen.pipeline_config import config

        warnings = config.validate_configuration()
        for warning in warnings:
            logger.warning(f"⚠ {warning}")
        return not any('will fail' in w or 'Invalid' in w for w in warnings)

    def initialize_database(self, drop_existing=False):
        """Initialize the database schema"""
        logger.info("Initializing database schema...")
        from metagen.database_models import db_manager

        try:
            if drop_existing:
                logger.info("Dropping existing database tables...")
                db_manager.drop_tables()
                logger.info("✓ Existing tables dropped")

            db_manager.create_tables()
            logger.info("✓ Database schema initialized")
            return True

        except Exception as e:
            logger.error(f"❌ Database initialization failed: {e}")
            return False

    def create_directories(self):
        """Create upload, temp, storage and log directories"""
        from metagen.pipeline_config import config

        config.create_directories()
        for directory in (config.upload_dir, config.temp_dir,
                          config.storage_dir, config.log_dir):
            logger.info(f"✓ Directory ready: {directory}")
        return True

    def create_config_file(self):
        """Write .env.example with the main settings"""
        path = self.project_root / '.env.example'
        path.write_text(ENV_EXAMPLE)
        logger.info(f"✓ Wrote {path}")
        return True

    def grant_tokens(self, user_id, count):
        """Credit ``count`` tokens to ``user_id``"""
        from metagen.token_ledger import token_ledger

        try:
            balance = token_ledger.credit(
                user_id, count, description='Granted by administrator')
        except ValueError as e:
            logger.error(f"❌ {e}")
            return False
        logger.info(f"✓ User {user_id} now has {balance} tokens")
        return True

    def run_health_check(self):
        """Run comprehensive health check"""
        logger.info("=" * 60)
        logger.info("METADATA PIPELINE HEALTH CHECK")
        logger.info("=" * 60)

        checks = [
            ("Prerequisites", self.check_prerequisites),
            ("Database", self.check_database_connection),
            ("Redis", self.check_redis_connection),
            ("Configuration", self.check_configuration),
        ]

        results = {}
        for name, check_func in checks:
            try:
                results[name] = check_func()
            except Exception as e:
                logger.error(f"❌ {name} check failed: {e}")
                results[name] = False

        logger.info("=" * 60)
        for name, result in results.items():
            status = "✓ PASS" if result else "❌ FAIL"
            logger.info(f"{name:20} {status}")

        return all(results.values())


def main():
    """Main admin entry point"""
    import argparse

    parser = argparse.ArgumentParser(
        description="Image metadata pipeline administration")
    parser.add_argument("--health-check", action="store_true",
                        help="Run health check")
    parser.add_argument("--init-db", action="store_true",
                        help="Initialize database")
    parser.add_argument("--drop-db", action="store_true",
                        help="Drop and recreate database tables")
    parser.add_argument("--create-dirs", action="store_true",
                        help="Create storage directories")
    parser.add_argument("--create-config", action="store_true",
                        help="Write .env.example")
    parser.add_argument("--grant-tokens", nargs=2, metavar=("USER_ID", "COUNT"),
                        help="Credit tokens to a user")

    args = parser.parse_args()
    admin = MetagenAdmin()

    actions = []
    if args.create_config:
        actions.append(admin.create_config_file)
    if args.create_dirs:
        actions.append(admin.create_directories)
    if args.init_db or args.drop_db:
        actions.append(lambda: admin.initialize_database(drop_existing=args.drop_db))
    if args.grant_tokens:
        user_id, count = args.grant_tokens
        try:
            count = int(count)
        except ValueError:
            parser.error("COUNT must be an integer")
        actions.append(lambda: admin.grant_tokens(user_id, count))
    if args.health_check:
        actions.append(admin.run_health_check)

    if not actions:
        parser.print_help()
        print("\nQuick start:")
        print("python manage.py --create-dirs --init-db")
        print("python manage.py --grant-tokens alice 100")
        return

    try:
        success = all([action() for action in actions])
    except KeyboardInterrupt:
        logger.info("\nInterrupted by user")
        sys.exit(1)

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
