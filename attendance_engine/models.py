"""
Data model shared across the engine.

Observations are ephemeral inputs produced by the external detector.
Identities and attendance records are durable and owned by the caller's
record store; the engine only proposes them.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np


class SessionMode(str, Enum):
    INDIVIDUAL = 'individual'
    GROUP = 'group'
    VERIFICATION = 'verification'


class RecordType(str, Enum):
    CHECK_IN = 'check_in'
    CHECK_OUT = 'check_out'
    GROUP_ATTENDANCE = 'group_attendance'
    VERIFICATION = 'verification'


DEFAULT_RECORD_TYPES: Dict[SessionMode, RecordType] = {
    SessionMode.INDIVIDUAL: RecordType.CHECK_IN,
    SessionMode.GROUP: RecordType.GROUP_ATTENDANCE,
    SessionMode.VERIFICATION: RecordType.VERIFICATION,
}


class DecisionReason(str, Enum):
    ACCEPTED = 'accepted'
    NO_CANDIDATES = 'no_candidates'
    BELOW_THRESHOLD = 'below_threshold'
    AMBIGUOUS = 'ambiguous'
    LOW_QUALITY = 'low_quality'
    NOT_LIVE = 'not_live'


class RecordStatus(str, Enum):
    VERIFIED = 'verified'
    PENDING = 'pending'
    REJECTED = 'rejected'
    FLAGGED = 'flagged'


REVIEW_STATUSES = (RecordStatus.FLAGGED, RecordStatus.PENDING)


class SessionState(str, Enum):
    OPEN = 'open'
    OBSERVING = 'observing'
    CLOSED = 'closed'


@dataclass(frozen=True)
class QualitySubscores:
    """Detector-supplied quality sub-signals in [0, 1]; None means not supplied."""

    blur: Optional[float] = None
    illumination: Optional[float] = None
    resolution: Optional[float] = None
    angle: Optional[float] = None


@dataclass(frozen=True)
class LivenessSubscores:
    """Detector-supplied liveness sub-signals in [0, 1]; None means not supplied."""

    blink: Optional[float] = None
    motion: Optional[float] = None
    texture: Optional[float] = None
    depth: Optional[float] = None


@dataclass(eq=False)
class Observation:
    """
    One detected face in one frame.

    bbox is a tracking hint only and never used for identity. face_crop
    (BGR) and landmarks (named point arrays such as 'left_eye', 'right_eye',
    'nose') are optional inputs for the gate's fallback strategies.
    """

    bbox: np.ndarray
    embedding: np.ndarray
    quality: QualitySubscores = field(default_factory=QualitySubscores)
    liveness: LivenessSubscores = field(default_factory=LivenessSubscores)
    anti_spoof_score: Optional[float] = None
    captured_at: float = field(default_factory=time.monotonic)
    face_crop: Optional[np.ndarray] = None
    landmarks: Optional[Dict[str, np.ndarray]] = None

    def __post_init__(self):
        self.bbox = np.asarray(self.bbox, dtype=np.float64)
        self.embedding = np.asarray(self.embedding, dtype=np.float64)

    @property
    def width(self) -> float:
        return float(self.bbox[2] - self.bbox[0])

    @property
    def height(self) -> float:
        return float(self.bbox[3] - self.bbox[1])

    @property
    def center(self) -> Tuple[float, float]:
        x1, y1, x2, y2 = self.bbox
        return float((x1 + x2) / 2.0), float((y1 + y2) / 2.0)

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)


@dataclass(frozen=True)
class GateResult:
    quality: float
    liveness: float
    anti_spoof: float
    eligible: bool
    reason: Optional[DecisionReason] = None
    subscores: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class MatchDecision:
    """
    Matcher output for one embedding.

    identity_id is set only when accepted. candidate_id always names the
    best-scoring identity (if any) so rejected decisions can be reviewed.
    """

    identity_id: Optional[str]
    score: float
    runner_up_score: float
    accepted: bool
    reason: DecisionReason
    candidate_id: Optional[str] = None
    runner_up_id: Optional[str] = None

    @classmethod
    def gate_rejected(cls, gate: GateResult) -> 'MatchDecision':
        return cls(
            identity_id=None,
            score=-1.0,
            runner_up_score=-1.0,
            accepted=False,
            reason=gate.reason or DecisionReason.LOW_QUALITY,
        )


@dataclass(frozen=True, eq=False)
class Identity:
    identity_id: str
    active_template: np.ndarray
    template_history: Tuple[np.ndarray, ...] = ()
    enrolled_at: float = 0.0
    last_matched_at: Optional[float] = None


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float
    accuracy: float = 0.0
    altitude: Optional[float] = None


@dataclass(frozen=True)
class AttendanceRecord:
    record_id: str
    identity_id: str
    session_id: str
    record_type: RecordType
    confidence: float
    location: Optional[Location]
    created_at: float
    source_track_id: int
    liveness_score: float = 0.0
    status: RecordStatus = RecordStatus.VERIFIED
    security_flags: Tuple[str, ...] = ()
    verified_by: Optional[str] = None
    processed_at: Optional[float] = None

    @property
    def key(self) -> Tuple[str, str, RecordType]:
        return self.identity_id, self.session_id, self.record_type


@dataclass(frozen=True)
class UnrecognizedTrack:
    """Track left without an identity, kept for manual follow-up with its best rejected decision."""

    track_id: int
    best_decision: Optional[MatchDecision]
    observation_count: int
    best_quality: float
    last_bbox: Optional[Tuple[float, float, float, float]] = None


@dataclass
class ReconcileStats:
    total_tracks: int = 0
    resolved_tracks: int = 0
    records_created: int = 0
    merged_count: int = 0
    unrecognized_count: int = 0
    observations: int = 0
    eligible_observations: int = 0
    invalid_observations: int = 0
    dropped_faces: int = 0
    submission_failures: int = 0
    frame_quality: float = 0.0
    rescan_recommended: bool = False


@dataclass
class GroupAttendanceResult:
    session_id: str
    records: List[AttendanceRecord] = field(default_factory=list)
    unrecognized: List[UnrecognizedTrack] = field(default_factory=list)
    stats: ReconcileStats = field(default_factory=ReconcileStats)

    @property
    def total_faces(self) -> int:
        return self.stats.total_tracks


@dataclass
class FrameResult:
    """Outcome of feeding one frame of observations into a session."""

    session_id: str
    frame_index: int
    track_ids: List[int] = field(default_factory=list)
    decisions: List[MatchDecision] = field(default_factory=list)
    gate_results: List[GateResult] = field(default_factory=list)
    invalid: List[str] = field(default_factory=list)
    dropped: int = 0
