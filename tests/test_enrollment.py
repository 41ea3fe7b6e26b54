import numpy as np
import pytest

from attendance_engine.errors import (
    AlreadyEnrolled,
    DuplicateIdentity,
    InvalidObservation,
    LowQuality,
    NotLive,
    UnknownIdentity,
)
from attendance_engine.recognition.enrollment import EnrollmentWorkflow
from attendance_engine.recognition.quality import QualityGate
from attendance_engine.recognition.store import EmbeddingStore

from helpers import blend, make_observation, unit


@pytest.fixture
def workflow(config):
    return EnrollmentWorkflow(config, EmbeddingStore(config), QualityGate(config))


def test_enroll_candidate(workflow):
    identity = workflow.enroll_candidate('alice', make_observation(unit(0)))

    assert identity.identity_id == 'alice'
    assert 'alice' in workflow.store


def test_duplicate_enrollment_rejected(workflow):
    workflow.enroll_candidate('alice', make_observation(unit(0)))

    with pytest.raises(DuplicateIdentity) as excinfo:
        workflow.enroll_candidate('bob', make_observation(unit(0)))

    assert excinfo.value.conflicting_identity_id == 'alice'
    assert excinfo.value.score == pytest.approx(1.0)
    assert 'bob' not in workflow.store
    assert len(workflow.store) == 1


def test_low_quality_enrollment_rejected(workflow):
    with pytest.raises(LowQuality) as excinfo:
        workflow.enroll_candidate('alice', make_observation(unit(0), quality=0.4))

    assert excinfo.value.quality == pytest.approx(0.4)
    assert len(workflow.store) == 0


def test_not_live_enrollment_rejected(workflow):
    with pytest.raises(NotLive):
        workflow.enroll_candidate('alice', make_observation(unit(0), anti_spoof=0.1))

    assert len(workflow.store) == 0


def test_liveness_can_be_waived(workflow):
    workflow.enroll_candidate(
        'alice', make_observation(unit(0), liveness=0.1), require_liveness=False
    )

    assert 'alice' in workflow.store


def test_enroll_existing_identity(workflow):
    workflow.enroll_candidate('alice', make_observation(unit(0)))

    with pytest.raises(AlreadyEnrolled):
        workflow.enroll_candidate('alice', make_observation(unit(1)))


def test_re_enroll_candidate(workflow):
    workflow.enroll_candidate('alice', make_observation(unit(0)))
    workflow.enroll_candidate('bob', make_observation(unit(1)))

    identity = workflow.re_enroll_candidate('alice', make_observation(blend(0.95, 0, 2)))
    assert len(identity.template_history) == 1

    with pytest.raises(DuplicateIdentity):
        workflow.re_enroll_candidate('alice', make_observation(unit(1)))
    np.testing.assert_allclose(workflow.store.get('alice').active_template, blend(0.95, 0, 2))

    with pytest.raises(UnknownIdentity):
        workflow.re_enroll_candidate('carol', make_observation(unit(3)))


def test_enroll_from_burst_averages_eligible_captures(workflow):
    burst = [
        make_observation(unit(0) * 2.0),
        make_observation(unit(1), quality=0.2),
        make_observation(unit(2)),
    ]

    identity = workflow.enroll_from_burst('alice', burst)

    np.testing.assert_allclose(identity.active_template, [0.5, 0.0, 0.5, 0, 0, 0, 0, 0])


def test_enroll_from_burst_without_eligible_capture(workflow):
    burst = [
        make_observation(unit(0), quality=0.3),
        make_observation(unit(0), quality=0.5),
    ]

    with pytest.raises(LowQuality) as excinfo:
        workflow.enroll_from_burst('alice', burst)
    assert excinfo.value.quality == pytest.approx(0.5)

    with pytest.raises(InvalidObservation):
        workflow.enroll_from_burst('alice', [])
