"""
Flask application for HTTP API.

Provides:
- GET /health: Service health check
- POST /sessions: Begin a capture session
- GET /sessions/<id>: Session state
- POST /sessions/<id>/frames: Feed one frame of observations
- POST /sessions/<id>/end: End and reconcile a session
- POST /identities: Enroll (or re-enroll) an identity
- DELETE /identities/<id>: Remove an identity
- POST /identities/<id>/rollback: Restore the previous template
- GET /identities/snapshot: Export the embedding store
- GET /identities/<id>/attendance: Attendance history of an identity
- GET /attendance/flagged: Records awaiting manual review
- POST /attendance/<id>/status: Record a manual review decision
- GET /attendance/stats: Record and template statistics
"""

import time
from typing import Any, Dict, Tuple

from flask import Flask, jsonify, request
from flask_cors import CORS

from .config import Config
from .engine import AttendanceEngine
from .errors import (
    DuplicateIdentity,
    EngineError,
    EnrollError,
    InvalidEmbedding,
    LowQuality,
    NotLive,
    SessionError,
    SnapshotFormatError,
    UnknownIdentity,
    UnknownRecord,
    UnknownSession,
)
from .logging_config import get_logger
from .models import RecordStatus
from .serialization import (
    frame_result_to_dict,
    location_from_dict,
    observation_from_dict,
    record_to_dict,
    result_to_dict,
)
from .submission import HISTORY_LIMIT
from .utils.timing import format_uptime

logger = get_logger(__name__)


def _status_for(error: EngineError) -> int:
    if isinstance(error, (InvalidEmbedding, SnapshotFormatError)):
        return 400
    if isinstance(error, (UnknownSession, UnknownIdentity, UnknownRecord)):
        return 404
    if isinstance(error, (LowQuality, NotLive)):
        return 422
    if isinstance(error, (SessionError, EnrollError)):
        return 409
    return 500


def _error_body(error: Exception) -> Dict[str, Any]:
    body = {'error': type(error).__name__, 'message': str(error)}
    if isinstance(error, DuplicateIdentity):
        body['conflictingIdentityId'] = error.conflicting_identity_id
        body['score'] = error.score
    if isinstance(error, LowQuality):
        body['quality'] = error.quality
    if isinstance(error, NotLive):
        body['liveness'] = error.liveness
        body['antiSpoof'] = error.anti_spoof
    return body


def _bad_request(message: str) -> Tuple[Any, int]:
    return jsonify({'error': 'BadRequest', 'message': message}), 400


def create_app(engine: AttendanceEngine, config: Config) -> Flask:
    """
    Create and configure Flask application.

    Args:
        engine: Attendance engine served by this app
        config: Service configuration

    Returns:
        Configured Flask app
    """
    app = Flask(__name__)
    CORS(app)
    started_at = time.time()

    @app.errorhandler(EngineError)
    def handle_engine_error(error: EngineError):
        status = _status_for(error)
        if status >= 500:
            logger.error(f'Unhandled engine error: {error}', exc_info=error)
        else:
            logger.warning(f'{type(error).__name__}: {error}')
        return jsonify(_error_body(error)), status

    @app.route('/health')
    def health():
        """Health check endpoint."""
        return jsonify({
            'status': 'ok',
            'service': config.service_name,
            'deviceId': config.device_id,
            'uptime': format_uptime(time.time() - started_at),
            **engine.stats(),
        })

    @app.route('/sessions', methods=['POST'])
    def begin_session():
        data = request.get_json(silent=True) or {}
        session_id = data.get('sessionId')
        if not session_id:
            return _bad_request('sessionId is required')

        try:
            location = location_from_dict(data.get('location'))
            session = engine.begin_session(
                str(session_id),
                mode=data.get('mode', 'individual'),
                record_type=data.get('recordType'),
                location=location,
                require_liveness=data.get('requireLiveness'),
            )
        except EngineError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            return _bad_request(f'Invalid session request: {e}')

        return jsonify({
            'sessionId': session.session_id,
            'mode': session.mode.value,
            'recordType': session.record_type.value,
            'requireLiveness': session.require_liveness,
            'state': session.state.value,
        }), 201

    @app.route('/sessions/<session_id>')
    def get_session(session_id: str):
        session = engine.get_session(session_id)
        return jsonify({
            'sessionId': session.session_id,
            'mode': session.mode.value,
            'recordType': session.record_type.value,
            'state': session.state.value,
            'closeReason': session.tracker.close_reason,
            'tracks': len(session.tracker.tracks),
            'frames': session.tracker.frame_index,
        })

    @app.route('/sessions/<session_id>/frames', methods=['POST'])
    def feed_frame(session_id: str):
        data = request.get_json(silent=True) or {}
        payload = data.get('observations')
        if not isinstance(payload, list):
            return _bad_request('observations must be a list')

        observations = []
        malformed = []
        for item in payload:
            try:
                observations.append(observation_from_dict(item))
            except InvalidEmbedding as e:
                malformed.append(str(e))

        result = engine.feed_frame(session_id, observations)
        body = frame_result_to_dict(result)
        body['invalid'] = malformed + body['invalid']
        return jsonify(body)

    @app.route('/sessions/<session_id>/end', methods=['POST'])
    def end_session(session_id: str):
        result = engine.end_and_reconcile(session_id)
        return jsonify(result_to_dict(result))

    @app.route('/identities', methods=['POST'])
    def enroll():
        data = request.get_json(silent=True) or {}
        identity_id = data.get('userId')
        if not identity_id:
            return _bad_request('userId is required')
        identity_id = str(identity_id)
        require_liveness = data.get('requireLiveness')

        if 'observations' in data:
            if not isinstance(data['observations'], list):
                return _bad_request('observations must be a list')
            observations = [observation_from_dict(o) for o in data['observations']]
            identity = engine.enroll_from_burst(identity_id, observations, require_liveness)
        elif 'observation' in data:
            observation = observation_from_dict(data['observation'])
            if data.get('reEnroll'):
                identity = engine.re_enroll_candidate(identity_id, observation, require_liveness)
            else:
                identity = engine.enroll_candidate(identity_id, observation, require_liveness)
        else:
            return _bad_request('observation or observations is required')

        return jsonify({
            'userId': identity.identity_id,
            'enrolledAt': identity.enrolled_at,
            'historySize': len(identity.template_history),
        }), 201

    @app.route('/identities/<identity_id>', methods=['DELETE'])
    def remove_identity(identity_id: str):
        engine.store.remove(identity_id)
        return jsonify({'userId': identity_id, 'removed': True})

    @app.route('/identities/<identity_id>/rollback', methods=['POST'])
    def rollback_identity(identity_id: str):
        identity = engine.store.rollback(identity_id)
        return jsonify({
            'userId': identity.identity_id,
            'historySize': len(identity.template_history),
        })

    @app.route('/identities/snapshot')
    def snapshot():
        return jsonify(engine.store.export_state())

    @app.route('/identities/<identity_id>/attendance')
    def attendance_history(identity_id: str):
        records = engine.record_store.for_identity(
            identity_id,
            start=request.args.get('start', type=float),
            end=request.args.get('end', type=float),
            limit=request.args.get('limit', HISTORY_LIMIT, type=int),
        )
        return jsonify({
            'userId': identity_id,
            'records': [record_to_dict(r) for r in records],
        })

    @app.route('/attendance/flagged')
    def flagged_attendance():
        records = engine.record_store.flagged()
        return jsonify({
            'count': len(records),
            'records': [record_to_dict(r) for r in records],
        })

    @app.route('/attendance/<record_id>/status', methods=['POST'])
    def update_attendance_status(record_id: str):
        data = request.get_json(silent=True) or {}
        if not data.get('status'):
            return _bad_request('status is required')
        try:
            status = RecordStatus(data['status'])
        except ValueError:
            return _bad_request(f"Unknown status: {data['status']!r}")

        record = engine.record_store.update_status(record_id, status, data.get('verifiedBy'))
        return jsonify(record_to_dict(record))

    @app.route('/attendance/stats')
    def attendance_stats():
        return jsonify({
            'totalTemplates': len(engine.store),
            **engine.record_store.summary(),
        })

    return app
