import math

import numpy as np

from attendance_engine.models import LivenessSubscores, Observation, QualitySubscores

DIM = 8


def unit(index, dim=DIM):
    vec = np.zeros(dim)
    vec[index] = 1.0
    return vec


def blend(score, primary=0, secondary=1, dim=DIM):
    """Unit vector whose cosine similarity with unit(primary) is `score`."""
    vec = np.zeros(dim)
    vec[primary] = score
    vec[secondary] = math.sqrt(1.0 - score ** 2)
    return vec


def make_observation(
    embedding,
    bbox=(0.0, 0.0, 100.0, 100.0),
    quality=0.95,
    liveness=0.95,
    anti_spoof=0.95,
    captured_at=0.0,
):
    return Observation(
        bbox=np.asarray(bbox, dtype=float),
        embedding=np.asarray(embedding, dtype=float),
        quality=QualitySubscores(quality, quality, quality, quality),
        liveness=LivenessSubscores(liveness, liveness, liveness, liveness),
        anti_spoof_score=anti_spoof,
        captured_at=captured_at,
    )


class FakeClock:
    def __init__(self, start=100.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
