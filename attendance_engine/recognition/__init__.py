"""
Recognition algorithms package.

Contains modules for:
- Quality and liveness gating
- Embedding matching
- Template storage
- Face tracking
- Attendance reconciliation
- Enrollment
"""

from .quality import QualityGate, validate_embedding, validate_observation
from .signals import SignalSet, default_signal_set
from .matching import cosine_similarity, match_embedding
from .store import EmbeddingStore
from .tracker import FaceTrack, FaceTracker, compute_iou
from .session import CaptureSession
from .attendance import AttendanceReconciler
from .enrollment import EnrollmentWorkflow

__all__ = [
    'QualityGate',
    'validate_embedding',
    'validate_observation',
    'SignalSet',
    'default_signal_set',
    'cosine_similarity',
    'match_embedding',
    'EmbeddingStore',
    'FaceTrack',
    'FaceTracker',
    'compute_iou',
    'CaptureSession',
    'AttendanceReconciler',
    'EnrollmentWorkflow',
]
