"""
Attendance reconciliation module.

Turns the closed tracks of a capture session into attendance records:
- At most one record per (identity, session, record type)
- Extra tracks of an already recorded identity are merged into statistics
- Unresolved tracks are reported as unrecognized for manual follow-up
"""

import time
import uuid
from typing import List, Optional, Set

import numpy as np

from ..config import Config
from ..errors import SessionStillOpen
from ..logging_config import get_logger
from ..models import (
    AttendanceRecord,
    GroupAttendanceResult,
    RecordStatus,
    ReconcileStats,
    SessionMode,
    UnrecognizedTrack,
)
from ..submission import RecordKey, RecordStore, SubmissionChannel
from .session import CaptureSession
from .store import EmbeddingStore
from .tracker import FaceTrack

logger = get_logger(__name__)

FLAG_LOW_CONFIDENCE = 'low_confidence'
FLAG_LOW_LIVENESS = 'low_liveness_score'
FLAG_LIVENESS_NOT_REQUIRED = 'liveness_not_required'
FLAG_MULTIPLE_FACES = 'multiple_faces'


class AttendanceReconciler:
    """
    Emits attendance records for closed sessions.

    Persistence and submission happen here and nowhere else in the engine.
    """

    def __init__(
        self,
        config: Config,
        record_store: RecordStore,
        store: Optional[EmbeddingStore] = None,
        channel: Optional[SubmissionChannel] = None
    ):
        """
        Initialize the reconciler.

        Args:
            config: Engine configuration
            record_store: Durable owner of attendance records
            store: Embedding store, updated with last-matched times
            channel: Optional submission channel for emitted records
        """
        self.config = config
        self.record_store = record_store
        self.store = store
        self.channel = channel

    def reconcile(
        self,
        session: CaptureSession,
        now: Optional[float] = None
    ) -> GroupAttendanceResult:
        """
        Reconcile a closed session.

        Args:
            session: Closed capture session
            now: Record creation time (defaults to time.time())

        Returns:
            GroupAttendanceResult with records, unrecognized tracks and stats

        Raises:
            SessionStillOpen: If the session has not been closed
        """
        with session.lock:
            if not session.closed:
                raise SessionStillOpen(session.session_id)

            created_at = time.time() if now is None else now
            tracks = session.tracker.tracks
            result = GroupAttendanceResult(session_id=session.session_id)
            stats = self._base_stats(session)
            result.stats = stats

            resolved = [t for t in tracks if t.resolved_identity is not None]
            resolved.sort(key=lambda t: (-t.representative_score, t.track_id))
            stats.resolved_tracks = len(resolved)

            distinct = {t.resolved_identity for t in resolved}
            multiple_faces = session.mode is SessionMode.INDIVIDUAL and len(distinct) > 1

            seen: Set[RecordKey] = set()
            for track in resolved:
                key = (track.resolved_identity, session.session_id, session.record_type)
                if key in seen or self.record_store.exists(*key):
                    stats.merged_count += 1
                    logger.debug(
                        f'Track {track.track_id} merged into existing record for '
                        f'{track.resolved_identity}'
                    )
                    continue
                seen.add(key)
                result.records.append(
                    self._build_record(session, track, created_at, multiple_faces)
                )

            for track in tracks:
                if track.resolved_identity is None:
                    result.unrecognized.append(self._unrecognized(track))

            stats.records_created = len(result.records)
            stats.unrecognized_count = len(result.unrecognized)

            self._emit(result, created_at)

        logger.info(
            f'✅ Session {session.session_id} reconciled: '
            f'{stats.records_created} records, {stats.merged_count} merged, '
            f'{stats.unrecognized_count} unrecognized, '
            f'frame quality {stats.frame_quality:.2f}'
            + (' (re-scan recommended)' if stats.rescan_recommended else '')
        )
        return result

    def _base_stats(self, session: CaptureSession) -> ReconcileStats:
        tracker = session.tracker
        qualities: List[float] = []
        observations = 0
        for track in tracker.tracks:
            observations += len(track.observations)
            qualities.extend(track.eligible_qualities)

        frame_quality = float(np.mean(qualities)) if qualities else 0.0
        return ReconcileStats(
            total_tracks=len(tracker.tracks),
            observations=observations,
            eligible_observations=len(qualities),
            invalid_observations=tracker.invalid_count,
            dropped_faces=tracker.dropped_count,
            frame_quality=frame_quality,
            rescan_recommended=frame_quality < self.config.frame_quality_floor,
        )

    def _build_record(
        self,
        session: CaptureSession,
        track: FaceTrack,
        created_at: float,
        multiple_faces: bool
    ) -> AttendanceRecord:
        confidence = float(track.representative_score)
        liveness = float(track.representative_liveness)

        flags = []
        if confidence < self.config.review_confidence:
            flags.append(FLAG_LOW_CONFIDENCE)
        if not session.require_liveness:
            flags.append(FLAG_LIVENESS_NOT_REQUIRED)
        elif liveness < self.config.review_liveness:
            flags.append(FLAG_LOW_LIVENESS)
        if multiple_faces:
            flags.append(FLAG_MULTIPLE_FACES)

        return AttendanceRecord(
            record_id=uuid.uuid4().hex,
            identity_id=track.resolved_identity,
            session_id=session.session_id,
            record_type=session.record_type,
            confidence=confidence,
            location=session.location,
            created_at=created_at,
            source_track_id=track.track_id,
            liveness_score=liveness,
            status=RecordStatus.FLAGGED if flags else RecordStatus.VERIFIED,
            security_flags=tuple(flags),
        )

    def _unrecognized(self, track: FaceTrack) -> UnrecognizedTrack:
        qualities = [g.quality for g in track.gate_results]
        last_bbox = tuple(float(v) for v in track.last_bbox) if track.last_bbox is not None else None
        return UnrecognizedTrack(
            track_id=track.track_id,
            best_decision=track.best_rejected,
            observation_count=len(track.observations),
            best_quality=max(qualities) if qualities else 0.0,
            last_bbox=last_bbox,
        )

    def _emit(self, result: GroupAttendanceResult, created_at: float) -> None:
        for record in result.records:
            self.record_store.save(record)
            if self.store is not None:
                self.store.touch(record.identity_id, created_at)
            if self.channel is None:
                continue
            try:
                delivered = self.channel.submit(record)
            except Exception as e:
                logger.error(f'❌ Submission of record {record.record_id} failed: {e}')
                delivered = False
            if not delivered:
                result.stats.submission_failures += 1
