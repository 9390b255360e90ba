#!/usr/bin/env python3
"""
Start the CallQC backend server.
Host and port come from HOST / PORT (see backend/callqc/config.py).
"""
import argparse
import logging
import subprocess
import sys
import time
from pathlib import Path

# Set up logging for startup timing
logging.basicConfig(
    level=logging.INFO,
    format='[WEB_STARTUP] %(message)s'
)
logger = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parent.parent


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run the CallQC API, workers and scheduler")
    parser.add_argument("--host", help="Bind address (default: HOST setting)")
    parser.add_argument("--port", type=int, help="Port (default: PORT setting)")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    return parser.parse_args(argv)


def main(argv=None):
    """Main function to start the backend server"""
    _WEB_STARTUP_START = time.perf_counter()
    logger.info(f"phase=backend_script_start timestamp={time.strftime('%Y-%m-%dT%H:%M:%S', time.gmtime())}")

    args = parse_args(argv)
    sys.path.insert(0, str(REPO_ROOT))
    from backend.callqc.config import settings

    host = args.host or settings.host
    port = str(args.port or settings.port)

    print(f"🚀 Starting CallQC backend on {host}:{port}")
    print(f"📍 Health check: http://127.0.0.1:{port}/health")
    print(f"📚 API docs: http://127.0.0.1:{port}/docs")
    print("-" * 50)

    cmd = [
        sys.executable, "-m", "uvicorn",
        "backend.callqc.main:app",
        "--host", host,
        "--port", port,
    ]
    if args.reload:
        cmd.append("--reload")
    logger.info(f"phase=uvicorn_spawn_start timestamp={time.strftime('%Y-%m-%dT%H:%M:%S', time.gmtime())}")

    try:
        subprocess.run(cmd, cwd=REPO_ROOT, check=False)
    except KeyboardInterrupt:
        print("\n🛑 Backend server stopped")
    except OSError as e:
        elapsed = (time.perf_counter() - _WEB_STARTUP_START) * 1000
        logger.error(f"phase=backend_script_error elapsed={elapsed:.3f}ms error={e}")
        print(f"❌ Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
