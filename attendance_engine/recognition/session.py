"""
Capture session state.

A session is one bounded capture interval (one check-in scan or one group
sweep). Frames for a session are serialized through its lock so track
aggregation and reconciliation stay single-writer.
"""

import threading
from dataclasses import dataclass, field
from typing import Optional

from ..models import Location, RecordType, SessionMode, SessionState
from .tracker import FaceTracker

CLOSE_ENDED = 'ended'
CLOSE_IDLE = 'idle_timeout'


@dataclass(eq=False)
class CaptureSession:
    session_id: str
    mode: SessionMode
    record_type: RecordType
    tracker: FaceTracker
    require_liveness: bool = True
    location: Optional[Location] = None
    started_at: float = 0.0
    last_activity: float = 0.0
    lock: threading.RLock = field(default_factory=threading.RLock)

    @property
    def state(self) -> SessionState:
        return self.tracker.state

    @property
    def closed(self) -> bool:
        return self.tracker.closed

    def idle_for(self, now: float) -> float:
        return now - self.last_activity
