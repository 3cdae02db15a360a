#!/usr/bin/env python3
"""
Flask web server launcher for the image metadata pipeline.
"""
import argparse
import os
import signal
import sys

# Add the project root to Python path (where metagen is located)
parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, parent_dir)

if __name__ == '__main__':
    parser = argparse.ArgumentParser(description="Image metadata pipeline server")
    parser.add_argument('--host', default='127.0.0.1',
                        help='Host to bind to (use 0.0.0.0 for production)')
    parser.add_argument('--port', type=int, default=5001)
    parser.add_argument('--debug', action='store_true')
    parser.add_argument('--no-workers', action='store_true',
                        help='Do not run batch workers in this process')
    args = parser.parse_args()

    from metagen.app import configure_logging, create_app, shutdown

    configure_logging()
    app = create_app(start_workers=False if args.no_workers else None)

    def shutdown_handler(signum, frame):
        """Handle graceful shutdown"""
        shutdown(app)
        sys.exit(0)

    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)

    print("=" * 60)
    print("Image Metadata Pipeline Server")
    print("=" * 60)
    print(f"Server URL: http://{args.host}:{args.port}")
    print(f"Health Check: http://{args.host}:{args.port}/api/v1/health")
    print(f"Background workers: {len(app.workers)}")
    print("=" * 60)
    print("Press Ctrl+C to stop the server")
    print()

    try:
        app.run(
            host=args.host,
            port=args.port,
            debug=args.debug,
            use_reloader=False
        )
    except Exception as e:
        print(f"\nServer failed to start: {e}")
        sys.exit(1)
