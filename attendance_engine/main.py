"""
Attendance Engine - Main Entry Point

Serves the attendance engine over HTTP for capture clients.
"""

import argparse
import dataclasses
import os
import sys
from pathlib import Path

import requests

from .app import create_app
from .config import load_config
from .engine import AttendanceEngine, IdleSessionReaper
from .identities import (
    load_identities_from_backend,
    load_identities_from_snapshot,
    persist_snapshot,
)
from .logging_config import get_logger, setup_logging
from .recognition.store import EmbeddingStore
from .submission import HttpSubmissionChannel, SubmissionQueue

logger = get_logger(__name__)


def _load_local_env() -> None:
    """Load environment variables from attendance_engine/.env if present."""
    env_path = Path(__file__).resolve().parent / '.env'
    if not env_path.exists():
        return

    for raw_line in env_path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        key, value = line.split('=', 1)
        os.environ.setdefault(key.strip(), value.strip())


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Attendance Engine - Biometric Attendance Reconciliation'
    )

    parser.add_argument(
        '--backend-url',
        type=str,
        help='Backend API URL (or set BACKEND_URL)'
    )

    parser.add_argument(
        '--port',
        type=int,
        help='HTTP port (or set API_PORT)'
    )

    parser.add_argument(
        '--snapshot-file',
        type=str,
        help='Embedding store snapshot path (or set SNAPSHOT_FILE)'
    )

    parser.add_argument(
        '--offline',
        action='store_true',
        help='Do not contact the backend; serve from the snapshot only'
    )

    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )

    return parser.parse_args()


def main() -> None:
    """Main entry point."""
    _load_local_env()
    args = parse_args()

    config = load_config()
    overrides = {}
    if args.backend_url:
        overrides['backend_url'] = args.backend_url
    if args.port:
        overrides['api_port'] = args.port
    if args.snapshot_file:
        overrides['snapshot_file'] = args.snapshot_file
    if args.debug:
        overrides['debug_mode'] = True
    config = dataclasses.replace(config, **overrides)

    # Setup logging
    setup_logging(config.device_id, config.debug_mode, config.service_name)
    logger = get_logger(__name__)

    logger.info('=' * 60)
    logger.info('Attendance Engine')
    logger.info('=' * 60)
    logger.info(f'Backend: {config.backend_url}')
    logger.info(f'Snapshot: {config.snapshot_file}')
    logger.info(f'Match threshold: {config.match_threshold} (margin {config.ambiguity_margin})')
    logger.info(f'Liveness required: {config.require_liveness}')
    logger.info('=' * 60)

    store = EmbeddingStore(config)
    submission = None
    reaper = None
    hydrated = False

    try:
        if args.offline:
            if not load_identities_from_snapshot(config, store):
                logger.warning('No usable snapshot, starting with an empty store')
        else:
            load_identities_from_backend(config, store)
        hydrated = True

        if not len(store):
            logger.warning('No identities enrolled, every face will be unrecognized')

        submission = SubmissionQueue(HttpSubmissionChannel(config))
        submission.start()

        engine = AttendanceEngine(config, store=store, channel=submission)
        reaper = IdleSessionReaper(engine)
        reaper.start()

        app = create_app(engine, config)
        logger.info(f'HTTP API: http://localhost:{config.api_port}/health')
        app.run(
            host='0.0.0.0',
            port=config.api_port,
            threaded=True,
            debug=False,
            use_reloader=False
        )

    except KeyboardInterrupt:
        logger.info('Received keyboard interrupt, shutting down...')
    except requests.exceptions.RequestException as e:
        logger.error(f'Backend unavailable and no snapshot to fall back on: {e}')
        sys.exit(1)
    except Exception as e:
        logger.error(f'Fatal error: {e}', exc_info=True)
        sys.exit(1)
    finally:
        if reaper is not None:
            reaper.stop()
        if submission is not None:
            submission.flush(timeout=5.0)
            submission.stop()
        if hydrated:
            persist_snapshot(config, store)


if __name__ == '__main__':
    main()
