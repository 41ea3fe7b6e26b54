import dataclasses
import threading

from attendance_engine.engine import AttendanceEngine
from attendance_engine.runner import run_capture

from helpers import make_observation, unit


class CountingDetector:
    def __init__(self, embedding):
        self.embedding = embedding
        self.frames = []

    def __call__(self, frame):
        self.frames.append(frame)
        return [make_observation(self.embedding)]


def test_run_capture_samples_frames_before_detection(config, clock):
    config = dataclasses.replace(config, frame_skip=3)
    engine = AttendanceEngine(config, clock=clock)
    engine.store.enroll('alice', unit(0))
    engine.begin_session('s1')
    detector = CountingDetector(unit(0))

    result = run_capture(engine, 's1', range(1, 10), detector, config)

    assert detector.frames == [3, 6, 9]
    assert [r.identity_id for r in result.records] == ['alice']
    assert result.stats.observations == 3
    assert 's1' not in engine.session_ids


def test_run_capture_stops_on_flag(config, clock):
    config = dataclasses.replace(config, frame_skip=1)
    engine = AttendanceEngine(config, clock=clock)
    engine.begin_session('s1')
    stop_flag = threading.Event()
    detector = CountingDetector(unit(0))

    def frames():
        for index in range(100):
            if index == 4:
                stop_flag.set()
            yield index

    result = run_capture(engine, 's1', frames(), detector, config, stop_flag)

    assert detector.frames == [0, 1, 2, 3]
    assert len(result.unrecognized) == 1


def test_run_capture_ends_when_session_goes_idle(config, clock):
    config = dataclasses.replace(config, frame_skip=1)
    engine = AttendanceEngine(config, clock=clock)
    engine.begin_session('s1')

    def detector(frame):
        clock.advance(config.session_idle_timeout)
        return []

    result = run_capture(engine, 's1', range(10), detector, config)

    assert result.stats.total_tracks == 0
    assert 's1' not in engine.session_ids


def test_run_capture_when_session_reconciled_elsewhere(config, clock):
    config = dataclasses.replace(config, frame_skip=1)
    engine = AttendanceEngine(config, clock=clock)
    engine.store.enroll('alice', unit(0))
    engine.begin_session('s1')
    reconciled = []

    def detector(frame):
        if frame == 2:
            reconciled.append(engine.end_and_reconcile('s1'))
        return [make_observation(unit(0))]

    result = run_capture(engine, 's1', range(10), detector, config)

    assert result is None
    assert [r.identity_id for r in reconciled[0].records] == ['alice']
    assert 's1' not in engine.session_ids
