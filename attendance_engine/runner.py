"""
Capture loop.

Drives one capture session from a frame source:
- Frame sampling (every N-th frame)
- Detection and embedding via an external detector
- Feeding observations into the engine
- Ending and reconciling the session
"""

import threading
from typing import Any, Iterable, List, Optional, Protocol

from .config import Config
from .engine import AttendanceEngine
from .errors import SessionClosed, UnknownSession
from .logging_config import get_logger
from .models import GroupAttendanceResult, Observation

logger = get_logger(__name__)


class Detector(Protocol):
    """Face detector and embedder: one frame in, observations out."""

    def __call__(self, frame: Any) -> List[Observation]:
        ...


def run_capture(
    engine: AttendanceEngine,
    session_id: str,
    frames: Iterable[Any],
    detector: Detector,
    config: Config,
    stop_flag: Optional[threading.Event] = None
) -> Optional[GroupAttendanceResult]:
    """
    Run a capture session over a frame source and reconcile it.

    The session must already be open. The loop ends when the frames run
    out, the stop flag is set, or the session closes (idle timeout or a
    concurrent end_session or reconcile).

    Args:
        engine: Attendance engine owning the session
        session_id: Session to feed
        frames: Frame source (camera reader, list of images, ...)
        detector: Called only for sampled frames
        config: Engine configuration (frame_skip)
        stop_flag: Optional threading.Event to signal graceful shutdown

    Returns:
        GroupAttendanceResult of the reconciled session, or None if another
        caller already reconciled it
    """
    frame_skip = max(1, config.frame_skip)
    frame_count = 0
    processed = 0

    logger.info(f'🎬 Starting capture loop for session {session_id} (frame_skip={frame_skip})')

    for frame in frames:
        # Check for stop signal
        if stop_flag and stop_flag.is_set():
            logger.info('Stop signal received, ending capture...')
            break

        frame_count += 1

        # Process only every N-th frame
        if frame_count % frame_skip != 0:
            continue

        observations = detector(frame)
        try:
            engine.feed_frame(session_id, observations)
        except (SessionClosed, UnknownSession) as e:
            logger.info(f'Capture loop stopped: {e}')
            break
        processed += 1

    logger.info(f'Capture finished: {frame_count} frames read, {processed} processed')
    try:
        return engine.end_and_reconcile(session_id)
    except UnknownSession:
        logger.info(f'Session {session_id} was already reconciled elsewhere')
        return None
