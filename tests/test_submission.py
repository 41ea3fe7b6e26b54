import dataclasses

import pytest
import requests

from attendance_engine.errors import UnknownRecord
from attendance_engine.models import AttendanceRecord, Location, RecordStatus, RecordType
from attendance_engine.submission import (
    HttpSubmissionChannel,
    InMemoryRecordStore,
    SubmissionQueue,
)
from attendance_engine.utils.timing import format_uptime, retry_with_backoff


def _record(identity_id='alice', session_id='s1', record_id='r1', created_at=1.0):
    return AttendanceRecord(
        record_id=record_id,
        identity_id=identity_id,
        session_id=session_id,
        record_type=RecordType.CHECK_IN,
        confidence=0.97,
        location=Location(latitude=52.5, longitude=13.4, accuracy=5.0),
        created_at=created_at,
        source_track_id=1,
        liveness_score=0.93,
    )


class FakeResponse:
    def __init__(self, status_code=201, text=''):
        self.status_code = status_code
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400


class RecordingChannel:
    def __init__(self, ok=True):
        self.ok = ok
        self.records = []

    def submit(self, record):
        self.records.append(record)
        return self.ok


def test_record_store_first_record_wins():
    store = InMemoryRecordStore()
    store.save(_record(record_id='first'))
    store.save(_record(record_id='second'))

    assert len(store) == 1
    assert store.exists('alice', 's1', RecordType.CHECK_IN)
    assert not store.exists('alice', 's1', RecordType.CHECK_OUT)
    assert store.records()[0].record_id == 'first'


def test_record_store_queries():
    store = InMemoryRecordStore()
    store.save(_record(session_id='s1', created_at=1.0))
    store.save(_record(session_id='s2', created_at=2.0))
    store.save(dataclasses.replace(
        _record(identity_id='bob', record_id='r2'),
        status=RecordStatus.FLAGGED,
        security_flags=('low_confidence',),
    ))

    assert [r.session_id for r in store.for_identity('alice')] == ['s2', 's1']
    assert [r.session_id for r in store.for_identity('alice', start=1.5)] == ['s2']
    assert [r.session_id for r in store.for_identity('alice', end=1.5)] == ['s1']
    assert len(store.for_identity('alice', limit=1)) == 1
    assert [r.identity_id for r in store.flagged()] == ['bob']


def test_record_review_updates_status():
    store = InMemoryRecordStore()
    store.save(dataclasses.replace(_record(), status=RecordStatus.FLAGGED))

    reviewed = store.update_status('r1', RecordStatus.VERIFIED, verified_by='supervisor')

    assert reviewed.status is RecordStatus.VERIFIED
    assert reviewed.verified_by == 'supervisor'
    assert reviewed.processed_at is not None
    assert store.get('r1') == reviewed
    assert store.flagged() == []
    assert store.exists('alice', 's1', RecordType.CHECK_IN)

    assert store.update_status('r1', 'pending').status is RecordStatus.PENDING
    assert [r.record_id for r in store.flagged()] == ['r1']

    with pytest.raises(UnknownRecord):
        store.update_status('missing', RecordStatus.REJECTED)
    with pytest.raises(ValueError):
        store.update_status('r1', 'approved')


def test_record_store_summary():
    store = InMemoryRecordStore()
    assert store.summary()['averageConfidence'] == 0.0

    store.save(dataclasses.replace(_record(record_id='a'), confidence=0.9))
    store.save(dataclasses.replace(
        _record(record_id='b', session_id='s2'), confidence=0.8, status=RecordStatus.FLAGGED
    ))
    store.update_status('b', RecordStatus.REJECTED, verified_by='supervisor')

    summary = store.summary()
    assert summary['totalRecords'] == 2
    assert summary['verifiedRecords'] == 1
    assert summary['flaggedRecords'] == 0
    assert summary['rejectedRecords'] == 1
    assert summary['averageConfidence'] == pytest.approx(0.85)


def test_http_channel_posts_record(config, monkeypatch):
    calls = []

    def fake_post(url, json=None, timeout=None):
        calls.append((url, json, timeout))
        return FakeResponse(201)

    monkeypatch.setattr(requests, 'post', fake_post)
    channel = HttpSubmissionChannel(dataclasses.replace(config, backend_url='http://backend:3000/'))

    assert channel.submit(_record())
    url, payload, timeout = calls[0]
    assert url == 'http://backend:3000/api/attendance'
    assert payload['userId'] == 'alice'
    assert payload['type'] == 'check_in'
    assert payload['location']['latitude'] == 52.5
    assert payload['status'] == 'verified'
    assert timeout == config.submission_timeout


def test_http_channel_reports_http_error(config, monkeypatch):
    monkeypatch.setattr(requests, 'post', lambda *a, **kw: FakeResponse(500, 'boom'))

    assert not HttpSubmissionChannel(config).submit(_record())


def test_http_channel_retries_timeouts(config, monkeypatch):
    attempts = []

    def fake_post(*args, **kwargs):
        attempts.append(1)
        raise requests.exceptions.Timeout('slow')

    monkeypatch.setattr(requests, 'post', fake_post)
    channel = HttpSubmissionChannel(
        dataclasses.replace(config, submission_retries=3), retry_delay=0.0
    )

    assert not channel.submit(_record())
    assert len(attempts) == 3


def test_http_channel_recovers_after_connection_error(config, monkeypatch):
    responses = [requests.exceptions.ConnectionError('down'), FakeResponse(200)]

    def fake_post(*args, **kwargs):
        response = responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(requests, 'post', fake_post)

    assert HttpSubmissionChannel(config, retry_delay=0.0).submit(_record())


def test_submission_queue_delivers():
    channel = RecordingChannel()
    queue = SubmissionQueue(channel, poll_interval=0.01)
    queue.start()
    try:
        assert queue.submit(_record())
        assert queue.flush(timeout=2.0)
    finally:
        cancelled = queue.stop()

    assert cancelled == []
    assert queue.sent == 1
    assert channel.records[0].identity_id == 'alice'


def test_submission_queue_keeps_failed_records():
    queue = SubmissionQueue(RecordingChannel(ok=False), poll_interval=0.01)
    queue.start()
    try:
        queue.submit(_record())
        assert queue.flush(timeout=2.0)
    finally:
        queue.stop()

    assert queue.sent == 0
    assert [r.record_id for r in queue.failed] == ['r1']


def test_submission_queue_stop_cancels_pending():
    queue = SubmissionQueue(RecordingChannel())
    queue.submit(_record(record_id='a'))
    queue.submit(_record(record_id='b'))

    cancelled = queue.stop()

    assert [r.record_id for r in cancelled] == ['a', 'b']
    assert queue.pending() == 0
    assert queue.flush(timeout=0.1)


def test_retry_with_backoff_only_retries_listed_errors():
    calls = []
    delays = []

    def flaky():
        calls.append(1)
        raise KeyError('nope')

    with pytest.raises(KeyError):
        retry_with_backoff(flaky, max_attempts=3, retry_on=(ValueError,), sleep=delays.append)
    assert len(calls) == 1

    calls.clear()
    with pytest.raises(KeyError):
        retry_with_backoff(flaky, max_attempts=3, initial_delay=0.5, sleep=delays.append)
    assert len(calls) == 3
    assert delays == [0.5, 1.0]


def test_format_uptime():
    assert format_uptime(5) == '5s'
    assert format_uptime(3725) == '1h 2m 5s'
    assert format_uptime(90061) == '1d 1h 1m 1s'
