"""
Error taxonomy for the attendance engine.

Expected outcomes (no match, low score, ambiguous candidates) are reported
through typed results, not exceptions. Everything here is either structurally
invalid input or a refused state transition.
"""

from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors."""


class InvalidEmbedding(EngineError, ValueError):
    """Embedding has the wrong length, non-finite values or zero norm."""


class InvalidObservation(InvalidEmbedding):
    """Observation is malformed and must not reach matching."""


class SnapshotFormatError(EngineError, ValueError):
    """Persisted store snapshot cannot be read by this version."""


class EnrollError(EngineError):
    """Base class for enrollment failures."""

    def __init__(self, identity_id: str, message: Optional[str] = None):
        self.identity_id = identity_id
        super().__init__(message or f'Enrollment failed for identity {identity_id}')


class AlreadyEnrolled(EnrollError):
    def __init__(self, identity_id: str):
        super().__init__(
            identity_id,
            f'Identity {identity_id} already has an active template, use re-enroll'
        )


class UnknownIdentity(EnrollError):
    def __init__(self, identity_id: str):
        super().__init__(identity_id, f'Identity {identity_id} is not enrolled')


class LowQuality(EnrollError):
    """Gate rejected the candidate on the quality composite."""

    def __init__(self, identity_id: str, quality: float):
        self.quality = quality
        super().__init__(
            identity_id,
            f'Capture quality too low for {identity_id} (quality={quality:.3f})'
        )


class NotLive(EnrollError):
    """Gate rejected the candidate on liveness or anti-spoof."""

    def __init__(self, identity_id: str, liveness: float, anti_spoof: float):
        self.liveness = liveness
        self.anti_spoof = anti_spoof
        super().__init__(
            identity_id,
            f'Liveness verification failed for {identity_id} '
            f'(liveness={liveness:.3f}, anti_spoof={anti_spoof:.3f})'
        )


class DuplicateIdentity(EnrollError):
    """
    Candidate face already belongs to a different enrolled identity.

    Attributes:
        conflicting_identity_id: Identity the candidate matched
        score: Cosine similarity against the conflicting template
    """

    def __init__(self, identity_id: str, conflicting_identity_id: str, score: float):
        self.conflicting_identity_id = conflicting_identity_id
        self.score = score
        super().__init__(
            identity_id,
            f'Candidate for {identity_id} matches existing identity '
            f'{conflicting_identity_id} (score={score:.3f})'
        )


class SessionError(EngineError):
    """Base class for session control failures."""

    def __init__(self, session_id: str, message: str):
        self.session_id = session_id
        super().__init__(message)


class SessionClosed(SessionError):
    def __init__(self, session_id: str, reason: Optional[str] = None):
        self.reason = reason
        suffix = f' ({reason})' if reason else ''
        super().__init__(session_id, f'Session {session_id} is closed{suffix}')


class UnknownSession(SessionError):
    def __init__(self, session_id: str):
        super().__init__(session_id, f'Session {session_id} does not exist')


class SessionExists(SessionError):
    def __init__(self, session_id: str):
        super().__init__(session_id, f'Session {session_id} already exists')


class SessionStillOpen(SessionError):
    def __init__(self, session_id: str):
        super().__init__(
            session_id,
            f'Session {session_id} must be closed before reconciliation'
        )


class UnknownRecord(EngineError):
    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f'Attendance record {record_id} does not exist')
