"""
JSON wire format for the HTTP surface and the backend.

Keys are camelCase to match the backend API.
"""

from typing import Any, Dict, Optional

import numpy as np

from .errors import InvalidObservation
from .models import (
    AttendanceRecord,
    FrameResult,
    GateResult,
    GroupAttendanceResult,
    LivenessSubscores,
    Location,
    MatchDecision,
    Observation,
    QualitySubscores,
    UnrecognizedTrack,
)


def location_from_dict(data: Optional[Dict[str, Any]]) -> Optional[Location]:
    if not data:
        return None
    return Location(
        latitude=float(data['latitude']),
        longitude=float(data['longitude']),
        accuracy=float(data.get('accuracy', 0.0)),
        altitude=data.get('altitude'),
    )


def location_to_dict(location: Optional[Location]) -> Optional[Dict[str, Any]]:
    if location is None:
        return None
    return {
        'latitude': location.latitude,
        'longitude': location.longitude,
        'accuracy': location.accuracy,
        'altitude': location.altitude,
    }


def observation_from_dict(data: Dict[str, Any]) -> Observation:
    """
    Build an Observation from a request payload.

    Expected keys: boundingBox [x1, y1, x2, y2], embedding, optional
    qualitySubscores, livenessSubscores, antiSpoofScore, capturedAt.

    Raises:
        InvalidObservation: If required keys are missing or malformed
    """
    try:
        quality = data.get('qualitySubscores') or {}
        liveness = data.get('livenessSubscores') or {}
        kwargs = {}
        if data.get('capturedAt') is not None:
            kwargs['captured_at'] = float(data['capturedAt'])
        return Observation(
            bbox=np.asarray(data['boundingBox'], dtype=np.float64),
            embedding=np.asarray(data['embedding'], dtype=np.float64),
            quality=QualitySubscores(**{k: quality.get(k) for k in (
                'blur', 'illumination', 'resolution', 'angle')}),
            liveness=LivenessSubscores(**{k: liveness.get(k) for k in (
                'blink', 'motion', 'texture', 'depth')}),
            anti_spoof_score=data.get('antiSpoofScore'),
            **kwargs,
        )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise InvalidObservation(f'Malformed observation payload: {e}') from e


def decision_to_dict(decision: Optional[MatchDecision]) -> Optional[Dict[str, Any]]:
    if decision is None:
        return None
    return {
        'identityId': decision.identity_id,
        'score': decision.score,
        'runnerUpScore': decision.runner_up_score,
        'accepted': decision.accepted,
        'reason': decision.reason.value,
        'candidateId': decision.candidate_id,
        'runnerUpId': decision.runner_up_id,
    }


def gate_to_dict(gate: GateResult) -> Dict[str, Any]:
    return {
        'quality': gate.quality,
        'liveness': gate.liveness,
        'antiSpoof': gate.anti_spoof,
        'eligible': gate.eligible,
        'reason': gate.reason.value if gate.reason else None,
    }


def record_to_dict(record: AttendanceRecord) -> Dict[str, Any]:
    return {
        'id': record.record_id,
        'userId': record.identity_id,
        'sessionId': record.session_id,
        'type': record.record_type.value,
        'confidence': record.confidence,
        'livenessScore': record.liveness_score,
        'location': location_to_dict(record.location),
        'createdAt': record.created_at,
        'sourceTrackId': record.source_track_id,
        'status': record.status.value,
        'securityFlags': list(record.security_flags),
        'verifiedBy': record.verified_by,
        'processedAt': record.processed_at,
    }


def unrecognized_to_dict(track: UnrecognizedTrack) -> Dict[str, Any]:
    return {
        'trackId': track.track_id,
        'bestDecision': decision_to_dict(track.best_decision),
        'observationCount': track.observation_count,
        'bestQuality': track.best_quality,
        'lastBoundingBox': list(track.last_bbox) if track.last_bbox else None,
    }


def result_to_dict(result: GroupAttendanceResult) -> Dict[str, Any]:
    stats = result.stats
    return {
        'sessionId': result.session_id,
        'totalFaces': result.total_faces,
        'records': [record_to_dict(r) for r in result.records],
        'unrecognized': [unrecognized_to_dict(t) for t in result.unrecognized],
        'stats': {
            'totalTracks': stats.total_tracks,
            'resolvedTracks': stats.resolved_tracks,
            'recordsCreated': stats.records_created,
            'mergedCount': stats.merged_count,
            'unrecognizedCount': stats.unrecognized_count,
            'observations': stats.observations,
            'eligibleObservations': stats.eligible_observations,
            'invalidObservations': stats.invalid_observations,
            'droppedFaces': stats.dropped_faces,
            'submissionFailures': stats.submission_failures,
            'frameQuality': stats.frame_quality,
            'rescanRecommended': stats.rescan_recommended,
        },
    }


def frame_result_to_dict(result: FrameResult) -> Dict[str, Any]:
    return {
        'sessionId': result.session_id,
        'frameIndex': result.frame_index,
        'faces': [
            {
                'trackId': track_id,
                'decision': decision_to_dict(decision),
                'gate': gate_to_dict(gate),
            }
            for track_id, decision, gate in zip(
                result.track_ids, result.decisions, result.gate_results
            )
        ],
        'invalid': list(result.invalid),
        'dropped': result.dropped,
    }
