#!/usr/bin/env python3
"""
Background worker launcher for the image metadata pipeline.

Pulls ``process_batch`` jobs from the Redis job queue; start the web server
with ``--no-workers`` (or START_WORKERS_IN_APP=false) when using it.
"""
import argparse
import os
import signal
import sys
import time

# Add the project root to Python path (where metagen is located)
parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, parent_dir)

if __name__ == '__main__':
    parser = argparse.ArgumentParser(description="Background Worker Process")
    parser.add_argument("--workers", type=int, default=None,
                        help="Number of worker threads (default: BATCH_WORKERS)")
    args = parser.parse_args()

    from metagen.app import configure_logging, initialize_database_with_retries
    from metagen.database_models import db_manager
    from metagen.job_queue import job_queue, start_background_workers

    configure_logging('metagen_workers.log')

    if not job_queue.is_distributed:
        print("REDIS_URL is not set or unreachable; workers would only see "
              "jobs from this process. Configure Redis to run standalone workers.")
        sys.exit(1)

    if not initialize_database_with_retries():
        sys.exit(1)

    workers = start_background_workers(args.workers)
    print(f"Started {len(workers)} background workers")
    print("Press Ctrl+C to stop the workers")

    stopping = []

    def shutdown_handler(signum, frame):
        stopping.append(signum)

    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)

    while not stopping:
        time.sleep(1)

    print("\nStopping background workers...")
    for worker in workers:
        worker.stop(timeout=30)
    db_manager.close()
