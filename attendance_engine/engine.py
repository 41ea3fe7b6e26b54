"""
Attendance engine.

Library entry point tying the pipeline together:
- Session control (begin, feed frames, end, reconcile)
- Idle-timeout expiry of sessions
- Enrollment on the shared embedding store
"""

import threading
import time
from typing import Callable, Dict, List, Optional, Sequence, Union

from .config import Config
from .errors import SessionExists, SessionStillOpen, UnknownSession
from .logging_config import get_logger
from .models import (
    DEFAULT_RECORD_TYPES,
    FrameResult,
    GroupAttendanceResult,
    Identity,
    Location,
    Observation,
    RecordType,
    SessionMode,
)
from .recognition.attendance import AttendanceReconciler
from .recognition.enrollment import EnrollmentWorkflow
from .recognition.quality import QualityGate
from .recognition.session import CLOSE_ENDED, CLOSE_IDLE, CaptureSession
from .recognition.store import EmbeddingStore
from .recognition.tracker import FaceTracker
from .submission import InMemoryRecordStore, RecordStore, SubmissionChannel

logger = get_logger(__name__)


class AttendanceEngine:
    """
    One engine per deployment; many concurrent sessions.

    Each session is guarded by its own lock, so frames of one session are
    aggregated by a single writer while different sessions run in parallel.
    The registry lock is only held for lookups and never while a session
    lock is being acquired.
    """

    def __init__(
        self,
        config: Config,
        store: Optional[EmbeddingStore] = None,
        record_store: Optional[RecordStore] = None,
        channel: Optional[SubmissionChannel] = None,
        gate: Optional[QualityGate] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the engine.

        Args:
            config: Engine configuration
            store: Embedding store (a new empty one if omitted)
            record_store: Owner of attendance records (in-memory if omitted)
            channel: Optional submission channel for emitted records
            gate: Quality and liveness gate (default strategies if omitted)
            clock: Monotonic clock used for idle timeouts
        """
        self.config = config
        self.store = store if store is not None else EmbeddingStore(config)
        self.record_store = record_store if record_store is not None else InMemoryRecordStore()
        self.gate = gate or QualityGate(config)
        self.clock = clock
        self.reconciler = AttendanceReconciler(config, self.record_store, self.store, channel)
        self.enrollment = EnrollmentWorkflow(config, self.store, self.gate)
        self._sessions: Dict[str, CaptureSession] = {}
        self._lock = threading.Lock()

    # Session control

    def begin_session(
        self,
        session_id: str,
        mode: Union[SessionMode, str] = SessionMode.INDIVIDUAL,
        record_type: Optional[Union[RecordType, str]] = None,
        location: Optional[Location] = None,
        require_liveness: Optional[bool] = None
    ) -> CaptureSession:
        """
        Open a new capture session.

        Args:
            session_id: Caller-assigned session key
            mode: individual, group or verification
            record_type: Record type to emit (defaults by mode)
            location: Capture location attached to emitted records
            require_liveness: Override of config.require_liveness

        Returns:
            The new CaptureSession

        Raises:
            SessionExists: If the session id is still registered
            ValueError: If mode or record_type is unknown
        """
        mode = SessionMode(mode)
        record_type = RecordType(record_type) if record_type else DEFAULT_RECORD_TYPES[mode]
        if require_liveness is None:
            require_liveness = self.config.require_liveness

        now = self.clock()
        session = CaptureSession(
            session_id=session_id,
            mode=mode,
            record_type=record_type,
            tracker=FaceTracker(session_id, self.config, self.gate),
            require_liveness=require_liveness,
            location=location,
            started_at=now,
            last_activity=now,
        )

        with self._lock:
            if session_id in self._sessions:
                raise SessionExists(session_id)
            self._sessions[session_id] = session

        logger.info(
            f'🎬 Session {session_id} started '
            f'(mode: {mode.value}, record: {record_type.value}, liveness: {require_liveness})'
        )
        return session

    def get_session(self, session_id: str) -> CaptureSession:
        """
        Raises:
            UnknownSession: If the session is not registered
        """
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSession(session_id)
        return session

    def feed_frame(self, session_id: str, observations: Sequence[Observation]) -> FrameResult:
        """
        Feed the observations of one processed frame into a session.

        A session that has been idle past the timeout is closed first, so
        the frame is rejected.

        Raises:
            UnknownSession: If the session is not registered
            SessionClosed: If the session has been closed
        """
        session = self.get_session(session_id)
        with session.lock:
            now = self.clock()
            self._expire_if_idle(session, now)
            result = session.tracker.update(
                observations, self.store.snapshot(), session.require_liveness
            )
            if observations:
                session.last_activity = now
        return result

    def end_session(self, session_id: str) -> bool:
        """
        Close a session.

        Returns:
            True if this call closed it, False if it was already closed

        Raises:
            UnknownSession: If the session is not registered
        """
        session = self.get_session(session_id)
        with session.lock:
            return session.tracker.close(CLOSE_ENDED)

    def reconcile(self, session_id: str) -> GroupAttendanceResult:
        """
        Reconcile a closed session and drop it from the registry.

        Raises:
            UnknownSession: If the session is not registered (or already reconciled)
            SessionStillOpen: If the session has not been closed
        """
        session = self.get_session(session_id)
        with session.lock:
            if not session.closed:
                raise SessionStillOpen(session_id)
            with self._lock:
                if self._sessions.get(session_id) is not session:
                    raise UnknownSession(session_id)
                del self._sessions[session_id]
            return self.reconciler.reconcile(session)

    def end_and_reconcile(self, session_id: str) -> GroupAttendanceResult:
        self.end_session(session_id)
        return self.reconcile(session_id)

    def expire_idle_sessions(self, now: Optional[float] = None) -> List[str]:
        """
        Close every open session idle for at least session_idle_timeout.

        Returns:
            Ids of the sessions closed by this call
        """
        with self._lock:
            sessions = list(self._sessions.values())

        expired = []
        for session in sessions:
            with session.lock:
                if self._expire_if_idle(session, self.clock() if now is None else now):
                    expired.append(session.session_id)
        return expired

    def _expire_if_idle(self, session: CaptureSession, now: float) -> bool:
        if session.closed or session.idle_for(now) < self.config.session_idle_timeout:
            return False
        session.tracker.close(CLOSE_IDLE)
        logger.info(
            f'Session {session.session_id} closed after {session.idle_for(now):.1f}s idle'
        )
        return True

    @property
    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    # Enrollment

    def enroll_candidate(
        self,
        identity_id: str,
        observation: Observation,
        require_liveness: Optional[bool] = None
    ) -> Identity:
        return self.enrollment.enroll_candidate(identity_id, observation, require_liveness)

    def re_enroll_candidate(
        self,
        identity_id: str,
        observation: Observation,
        require_liveness: Optional[bool] = None
    ) -> Identity:
        return self.enrollment.re_enroll_candidate(identity_id, observation, require_liveness)

    def enroll_from_burst(
        self,
        identity_id: str,
        observations: Sequence[Observation],
        require_liveness: Optional[bool] = None
    ) -> Identity:
        return self.enrollment.enroll_from_burst(identity_id, observations, require_liveness)

    def stats(self) -> Dict:
        with self._lock:
            sessions = list(self._sessions.values())
        return {
            'enrolled': len(self.store),
            'sessions': len(sessions),
            'openSessions': sum(1 for s in sessions if not s.closed),
        }


class IdleSessionReaper:
    """Background thread that periodically expires idle sessions."""

    def __init__(self, engine: AttendanceEngine, interval: float = 1.0):
        self.engine = engine
        self.interval = interval
        self.stop_flag = threading.Event()
        self.thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the reaper thread."""
        if self.thread and self.thread.is_alive():
            return
        self.stop_flag.clear()
        self.thread = threading.Thread(
            target=self._run,
            daemon=True,
            name='IdleSessionReaper'
        )
        self.thread.start()

    def _run(self) -> None:
        while not self.stop_flag.wait(self.interval):
            try:
                self.engine.expire_idle_sessions()
            except Exception as e:
                logger.error(f'Idle session expiry failed: {e}', exc_info=True)

    def stop(self) -> None:
        """Stop the reaper thread."""
        self.stop_flag.set()
        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=5)

    def is_alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()
