import pytest

from attendance_engine.app import create_app

from helpers import unit


def _observation(embedding, bbox=(0, 0, 100, 100), quality=0.95, liveness=0.95):
    return {
        'boundingBox': list(bbox),
        'embedding': list(embedding),
        'qualitySubscores': dict.fromkeys(['blur', 'illumination', 'resolution', 'angle'], quality),
        'livenessSubscores': dict.fromkeys(['blink', 'motion', 'texture', 'depth'], liveness),
        'antiSpoofScore': 0.95,
    }


@pytest.fixture
def client(engine, config):
    app = create_app(engine, config)
    app.testing = True
    return app.test_client()


def test_health(client):
    response = client.get('/health')

    assert response.status_code == 200
    body = response.get_json()
    assert body['status'] == 'ok'
    assert body['enrolled'] == 0
    assert body['uptime'].endswith('s')


def test_enroll_capture_and_reconcile(client):
    response = client.post('/identities', json={
        'userId': 'alice',
        'observation': _observation(unit(0)),
    })
    assert response.status_code == 201
    assert response.get_json()['userId'] == 'alice'

    response = client.post('/sessions', json={
        'sessionId': 'gate-1',
        'mode': 'individual',
        'location': {'latitude': 52.5, 'longitude': 13.4},
    })
    assert response.status_code == 201
    assert response.get_json()['recordType'] == 'check_in'

    for _ in range(2):
        response = client.post('/sessions/gate-1/frames', json={
            'observations': [_observation(unit(0))],
        })
        assert response.status_code == 200
    face = response.get_json()['faces'][0]
    assert face['decision']['identityId'] == 'alice'
    assert face['gate']['eligible']

    response = client.get('/sessions/gate-1')
    assert response.get_json()['state'] == 'observing'

    response = client.post('/sessions/gate-1/end')
    assert response.status_code == 200
    body = response.get_json()
    assert body['stats']['recordsCreated'] == 1
    record = body['records'][0]
    assert record['userId'] == 'alice'
    assert record['location']['latitude'] == 52.5
    assert record['confidence'] == pytest.approx(1.0)

    response = client.post('/sessions/gate-1/frames', json={'observations': []})
    assert response.status_code == 404


def test_malformed_observation_rejected_individually(client):
    client.post('/sessions', json={'sessionId': 's1'})
    response = client.post('/sessions/s1/frames', json={
        'observations': [
            {'boundingBox': [0, 0, 10, 10]},
            _observation([float('nan')] * 8, bbox=(300, 0, 400, 100)),
            _observation(unit(0)),
        ],
    })

    assert response.status_code == 200
    body = response.get_json()
    assert len(body['invalid']) == 2
    assert len(body['faces']) == 1


def test_session_errors(client):
    assert client.post('/sessions', json={}).status_code == 400
    assert client.post('/sessions', json={'sessionId': 's1', 'mode': 'bogus'}).status_code == 400
    assert client.post('/sessions/missing/frames', json={'observations': []}).status_code == 404
    assert client.post('/sessions/missing/end').status_code == 404

    assert client.post('/sessions', json={'sessionId': 's1'}).status_code == 201
    response = client.post('/sessions', json={'sessionId': 's1'})
    assert response.status_code == 409
    assert response.get_json()['error'] == 'SessionExists'

    assert client.post('/sessions/s1/frames', json={'observations': 'x'}).status_code == 400


def test_enrollment_errors(client):
    client.post('/identities', json={'userId': 'alice', 'observation': _observation(unit(0))})

    response = client.post('/identities', json={'userId': 'bob', 'observation': _observation(unit(0))})
    assert response.status_code == 409
    body = response.get_json()
    assert body['error'] == 'DuplicateIdentity'
    assert body['conflictingIdentityId'] == 'alice'

    response = client.post('/identities', json={
        'userId': 'carol',
        'observation': _observation(unit(2), quality=0.4),
    })
    assert response.status_code == 422
    assert response.get_json()['error'] == 'LowQuality'

    response = client.post('/identities', json={
        'userId': 'dave',
        'observation': _observation(unit(3), liveness=0.2),
    })
    assert response.status_code == 422
    assert response.get_json()['error'] == 'NotLive'

    response = client.post('/identities', json={'userId': 'erin', 'observation': {'embedding': []}})
    assert response.status_code == 400

    assert client.post('/identities', json={'observation': _observation(unit(4))}).status_code == 400
    assert client.post('/identities', json={'userId': 'frank'}).status_code == 400


def test_re_enroll_rollback_and_remove(client):
    client.post('/identities', json={'userId': 'alice', 'observation': _observation(unit(0))})

    response = client.post('/identities', json={
        'userId': 'alice',
        'observation': _observation(unit(1)),
        'reEnroll': True,
    })
    assert response.status_code == 201
    assert response.get_json()['historySize'] == 1

    response = client.post('/identities/alice/rollback')
    assert response.status_code == 200
    assert response.get_json()['historySize'] == 0
    assert client.post('/identities/alice/rollback').status_code == 409

    assert client.delete('/identities/alice').status_code == 200
    assert client.delete('/identities/alice').status_code == 404


def test_burst_enrollment(client):
    response = client.post('/identities', json={
        'userId': 'alice',
        'observations': [_observation(unit(0)), _observation(unit(0), quality=0.1)],
    })

    assert response.status_code == 201


def test_snapshot_export(client):
    client.post('/identities', json={'userId': 'alice', 'observation': _observation(unit(0))})

    body = client.get('/identities/snapshot').get_json()

    assert body['format'] == 'attendance-engine/embedding-store'
    assert body['version'] == 1
    assert [entry['identity_id'] for entry in body['identities']] == ['alice']


def _record_attendance(client, session_id, embedding, require_liveness=True):
    client.post('/sessions', json={'sessionId': session_id, 'requireLiveness': require_liveness})
    client.post(f'/sessions/{session_id}/frames', json={'observations': [_observation(embedding)]})
    return client.post(f'/sessions/{session_id}/end').get_json()['records'][0]


def test_attendance_history_review_and_stats(client):
    client.post('/identities', json={'userId': 'alice', 'observation': _observation(unit(0))})
    verified = _record_attendance(client, 's1', unit(0))
    flagged = _record_attendance(client, 's2', unit(0), require_liveness=False)
    assert verified['status'] == 'verified'
    assert flagged['status'] == 'flagged'

    body = client.get('/identities/alice/attendance').get_json()
    assert {r['sessionId'] for r in body['records']} == {'s1', 's2'}
    assert client.get('/identities/alice/attendance?limit=1').get_json()['records'][0]['id']

    body = client.get('/attendance/flagged').get_json()
    assert body['count'] == 1
    assert body['records'][0]['id'] == flagged['id']

    response = client.post(f"/attendance/{flagged['id']}/status", json={
        'status': 'verified',
        'verifiedBy': 'supervisor',
    })
    assert response.status_code == 200
    assert response.get_json()['verifiedBy'] == 'supervisor'
    assert client.get('/attendance/flagged').get_json()['count'] == 0

    stats = client.get('/attendance/stats').get_json()
    assert stats['totalTemplates'] == 1
    assert stats['totalRecords'] == 2
    assert stats['verifiedRecords'] == 2
    assert stats['averageConfidence'] == pytest.approx(1.0)


def test_attendance_status_errors(client):
    assert client.post('/attendance/missing/status', json={}).status_code == 400
    assert client.post('/attendance/missing/status', json={'status': 'approved'}).status_code == 400

    response = client.post('/attendance/missing/status', json={'status': 'rejected'})
    assert response.status_code == 404
    assert response.get_json()['error'] == 'UnknownRecord'
