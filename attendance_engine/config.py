"""
Configuration module for the Attendance Engine.

Loads configuration from environment variables with sensible defaults.
All settings are immutable after initialization; per-deployment overrides
are made with dataclasses.replace().
"""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Config:
    """
    Immutable configuration for the Attendance Engine.

    Matching:
        match_threshold: Minimum cosine similarity to accept a match (closed bound)
        ambiguity_margin: Minimum gap between best and runner-up candidates
        embedding_dim: Fixed embedding length shared by the whole system

    Gate:
        quality_threshold: Minimum quality composite
        liveness_threshold: Minimum liveness composite
        anti_spoof_threshold: Minimum anti-spoof score
        require_liveness: Default liveness requirement for new sessions

    Capture:
        frame_skip: Process every N-th frame (higher = faster, less accurate)
        max_faces_per_frame: Faces processed per frame, largest first

    Tracking:
        track_iou_threshold: IoU threshold for bbox matching
        track_frame_gap_budget: Processed frames a track may miss and still grow
        revoke_after: Consecutive disagreeing decisions that unresolve a track
        session_idle_timeout: Seconds without observations before a session closes

    Store:
        template_history_bound: Prior templates kept per identity
        snapshot_file: Path of the persisted store snapshot

    Reconciliation:
        frame_quality_floor: Sessions below this mean quality need a re-scan
        review_confidence: Records below this confidence are flagged
        review_liveness: Records below this liveness are flagged

    Backend Integration:
        backend_url: Base URL of the backend API (e.g., http://backend:3000)
        submission_timeout: Seconds per HTTP submission attempt
        submission_retries: Attempts per record before giving up

    Service:
        service_name: Name of this service instance
        device_id: Identifier of the capturing device (for logging)
        api_port: Port for the Flask HTTP server
        debug_mode: Enable debug logging
    """

    # Matching
    match_threshold: float = 0.85
    ambiguity_margin: float = 0.03
    embedding_dim: int = 512

    # Gate
    quality_threshold: float = 0.8
    liveness_threshold: float = 0.9
    anti_spoof_threshold: float = 0.8
    require_liveness: bool = True

    # Capture
    frame_skip: int = 3
    max_faces_per_frame: int = 10

    # Tracking
    track_iou_threshold: float = 0.3
    track_frame_gap_budget: int = 3
    revoke_after: int = 3
    session_idle_timeout: float = 5.0

    # Store
    template_history_bound: int = 5
    snapshot_file: str = 'embedding_store.json'

    # Reconciliation
    frame_quality_floor: float = 0.85
    review_confidence: float = 0.9
    review_liveness: float = 0.9

    # Backend
    backend_url: str = 'http://localhost:3000'
    submission_timeout: float = 5.0
    submission_retries: int = 3

    # Service
    service_name: str = 'attendance-engine'
    device_id: str = 'local'
    api_port: int = 5001
    debug_mode: bool = False


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() == 'true'


def load_config() -> Config:
    """
    Load configuration from environment variables.

    Returns:
        Config: Immutable configuration object
    """
    defaults = Config()

    return Config(
        # Matching
        match_threshold=float(os.getenv('MATCH_THRESHOLD', defaults.match_threshold)),
        ambiguity_margin=float(os.getenv('AMBIGUITY_MARGIN', defaults.ambiguity_margin)),
        embedding_dim=int(os.getenv('EMBEDDING_DIM', defaults.embedding_dim)),

        # Gate
        quality_threshold=float(os.getenv('QUALITY_THRESHOLD', defaults.quality_threshold)),
        liveness_threshold=float(os.getenv('LIVENESS_THRESHOLD', defaults.liveness_threshold)),
        anti_spoof_threshold=float(os.getenv('ANTI_SPOOF_THRESHOLD', defaults.anti_spoof_threshold)),
        require_liveness=_env_bool('REQUIRE_LIVENESS', defaults.require_liveness),

        # Capture
        frame_skip=int(os.getenv('FRAME_SKIP', defaults.frame_skip)),
        max_faces_per_frame=int(os.getenv('MAX_FACES', defaults.max_faces_per_frame)),

        # Tracking
        track_iou_threshold=float(os.getenv('TRACK_IOU_THRESHOLD', defaults.track_iou_threshold)),
        track_frame_gap_budget=int(os.getenv('TRACK_FRAME_GAP', defaults.track_frame_gap_budget)),
        revoke_after=int(os.getenv('REVOKE_AFTER', defaults.revoke_after)),
        session_idle_timeout=float(os.getenv('SESSION_IDLE_TIMEOUT', defaults.session_idle_timeout)),

        # Store
        template_history_bound=int(os.getenv('TEMPLATE_HISTORY', defaults.template_history_bound)),
        snapshot_file=os.getenv('SNAPSHOT_FILE', defaults.snapshot_file),

        # Reconciliation
        frame_quality_floor=float(os.getenv('FRAME_QUALITY_FLOOR', defaults.frame_quality_floor)),
        review_confidence=float(os.getenv('REVIEW_CONFIDENCE', defaults.review_confidence)),
        review_liveness=float(os.getenv('REVIEW_LIVENESS', defaults.review_liveness)),

        # Backend
        backend_url=os.getenv('BACKEND_URL', defaults.backend_url),
        submission_timeout=float(os.getenv('SUBMISSION_TIMEOUT', defaults.submission_timeout)),
        submission_retries=int(os.getenv('SUBMISSION_RETRIES', defaults.submission_retries)),

        # Service
        service_name=os.getenv('SERVICE_NAME', defaults.service_name),
        device_id=os.getenv('DEVICE_ID', defaults.device_id),
        api_port=int(os.getenv('API_PORT', defaults.api_port)),
        debug_mode=_env_bool('DEBUG', defaults.debug_mode),
    )
