import dataclasses

import numpy as np
import pytest

from attendance_engine.errors import InvalidEmbedding, InvalidObservation
from attendance_engine.models import DecisionReason, LivenessSubscores, QualitySubscores
from attendance_engine.recognition.quality import QualityGate, validate_embedding

from helpers import DIM, make_observation, unit


def test_gate_accepts_good_capture(config):
    gate = QualityGate(config)
    result = gate.evaluate(make_observation(unit(0)))

    assert result.eligible
    assert result.reason is None
    assert result.quality == pytest.approx(0.95)
    assert result.liveness == pytest.approx(0.95)
    assert result.anti_spoof == pytest.approx(0.95)


def test_gate_is_idempotent(config):
    gate = QualityGate(config)
    observation = make_observation(unit(0), quality=0.83, liveness=0.91)
    history = [make_observation(unit(0)), make_observation(unit(0))]

    first = gate.evaluate(observation, history)
    second = gate.evaluate(observation, history)

    assert first == second


def test_low_quality_rejected(config):
    result = QualityGate(config).evaluate(make_observation(unit(0), quality=0.5))

    assert not result.eligible
    assert result.reason is DecisionReason.LOW_QUALITY


def test_low_liveness_rejected(config):
    result = QualityGate(config).evaluate(make_observation(unit(0), liveness=0.5))

    assert not result.eligible
    assert result.reason is DecisionReason.NOT_LIVE


def test_low_anti_spoof_rejected(config):
    result = QualityGate(config).evaluate(make_observation(unit(0), anti_spoof=0.3))

    assert not result.eligible
    assert result.reason is DecisionReason.NOT_LIVE


def test_quality_checked_before_liveness(config):
    result = QualityGate(config).evaluate(make_observation(unit(0), quality=0.2, liveness=0.2))

    assert result.reason is DecisionReason.LOW_QUALITY


def test_liveness_skipped_when_not_required(config):
    gate = QualityGate(config)
    observation = make_observation(unit(0), liveness=0.1, anti_spoof=0.1)

    result = gate.evaluate(observation, require_liveness=False)
    assert result.eligible
    assert result.liveness == 1.0
    assert result.anti_spoof == 1.0

    relaxed = QualityGate(dataclasses.replace(config, require_liveness=False))
    assert relaxed.evaluate(observation).eligible


def test_quality_composite_uses_weights(config):
    observation = make_observation(unit(0))
    observation.quality = QualitySubscores(blur=1.0, illumination=1.0, resolution=0.0, angle=0.0)

    result = QualityGate(config).evaluate(observation)

    assert result.quality == pytest.approx(0.6)
    assert result.subscores['blur'] == 1.0
    assert result.subscores['resolution'] == 0.0


def test_liveness_composite_uses_weights(config):
    observation = make_observation(unit(0))
    observation.liveness = LivenessSubscores(blink=0.0, motion=1.0, texture=1.0, depth=1.0)

    result = QualityGate(config).evaluate(observation)

    assert result.liveness == pytest.approx(0.7)
    assert result.reason is DecisionReason.NOT_LIVE


@pytest.mark.parametrize('embedding', [
    np.full(DIM, np.nan),
    np.zeros(DIM),
    np.ones(DIM + 1),
])
def test_invalid_embedding_rejected(config, embedding):
    with pytest.raises(InvalidObservation):
        QualityGate(config).evaluate(make_observation(embedding))


def test_out_of_range_subscore_rejected(config):
    with pytest.raises(InvalidObservation):
        QualityGate(config).evaluate(make_observation(unit(0), quality=1.5))


def test_missing_subscore_without_crop_rejected(config):
    observation = make_observation(unit(0))
    observation.quality = QualitySubscores(blur=None, illumination=0.9, resolution=0.9, angle=0.9)

    with pytest.raises(InvalidObservation):
        QualityGate(config).evaluate(observation)


def test_inverted_bbox_rejected(config):
    with pytest.raises(InvalidObservation):
        QualityGate(config).evaluate(make_observation(unit(0), bbox=(50, 50, 10, 10)))


def test_validate_embedding_returns_float_vector():
    vec = validate_embedding([1, 0, 0], 3)
    assert vec.dtype == np.float64

    with pytest.raises(InvalidEmbedding):
        validate_embedding([1, 0, 0], 4)
