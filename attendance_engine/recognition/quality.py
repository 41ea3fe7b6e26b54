"""
Face quality and liveness gate.

Evaluates an observation based on:
- Quality composite (blur, illumination, resolution, angle)
- Liveness composite (blink, motion, texture, depth)
- Anti-spoof score

The gate is a pure function of the observation, the track history handed
in, and the configuration.
"""

import math
from typing import Dict, Optional, Sequence

import numpy as np

from ..config import Config
from ..errors import InvalidEmbedding, InvalidObservation
from ..models import DecisionReason, GateResult, Observation
from .signals import SignalSet, default_signal_set

QUALITY_WEIGHTS: Dict[str, float] = {
    'blur': 0.30,
    'illumination': 0.30,
    'resolution': 0.20,
    'angle': 0.20,
}

LIVENESS_WEIGHTS: Dict[str, float] = {
    'blink': 0.30,
    'motion': 0.30,
    'texture': 0.20,
    'depth': 0.20,
}


def validate_embedding(embedding: np.ndarray, dim: int) -> np.ndarray:
    """
    Check an embedding's shape and values.

    Args:
        embedding: Candidate embedding vector
        dim: Required length

    Returns:
        The embedding as a 1-D float64 array

    Raises:
        InvalidEmbedding: On wrong length, NaN/inf or zero norm
    """
    vec = np.asarray(embedding, dtype=np.float64)
    if vec.ndim != 1 or vec.shape[0] != dim:
        raise InvalidEmbedding(f'Embedding must have length {dim}, got shape {vec.shape}')
    if not np.all(np.isfinite(vec)):
        raise InvalidEmbedding('Embedding contains NaN or infinite values')
    if float(np.linalg.norm(vec)) == 0.0:
        raise InvalidEmbedding('Embedding has zero norm')
    return vec


def validate_observation(observation: Observation, config: Config) -> None:
    """
    Structural checks that must pass before an observation reaches the gate.

    Raises:
        InvalidObservation: If the embedding or bounding box is malformed
    """
    try:
        validate_embedding(observation.embedding, config.embedding_dim)
    except InvalidEmbedding as e:
        raise InvalidObservation(str(e)) from e

    bbox = observation.bbox
    if bbox.shape != (4,) or not np.all(np.isfinite(bbox)):
        raise InvalidObservation(f'Bounding box must be 4 finite values, got {bbox!r}')
    if bbox[2] < bbox[0] or bbox[3] < bbox[1]:
        raise InvalidObservation(f'Bounding box corners are inverted: {bbox.tolist()}')


def _composite(scores: Dict[str, float], weights: Dict[str, float]) -> float:
    return float(sum(weights[name] * scores[name] for name in weights))


class QualityGate:
    """
    Computes composite quality and liveness scores and decides eligibility.

    Sub-signals come from a SignalSet so each one can be replaced without
    touching the orchestration here.
    """

    def __init__(self, config: Config, signals: Optional[SignalSet] = None):
        """
        Initialize the gate.

        Args:
            config: Engine configuration
            signals: Sub-signal strategies (defaults to supplied-with-fallback)
        """
        self.config = config
        self.signals = signals or default_signal_set()

    def evaluate(
        self,
        observation: Observation,
        history: Sequence[Observation] = (),
        require_liveness: Optional[bool] = None
    ) -> GateResult:
        """
        Evaluate one observation.

        Args:
            observation: Observation to score
            history: Earlier observations of the same track, oldest first
            require_liveness: Override of config.require_liveness

        Returns:
            GateResult with composites and eligibility

        Raises:
            InvalidObservation: If the observation is malformed
        """
        validate_observation(observation, self.config)
        if require_liveness is None:
            require_liveness = self.config.require_liveness

        subscores = {
            name: getattr(self.signals, name).score(observation, history)
            for name in QUALITY_WEIGHTS
        }
        quality = _composite(subscores, QUALITY_WEIGHTS)

        if require_liveness:
            liveness_scores = {
                name: getattr(self.signals, name).score(observation, history)
                for name in LIVENESS_WEIGHTS
            }
            subscores.update(liveness_scores)
            liveness = _composite(liveness_scores, LIVENESS_WEIGHTS)
            anti_spoof = float(self.signals.anti_spoof.score(observation, history))
            if not math.isfinite(anti_spoof):
                raise InvalidObservation('anti_spoof score is not finite')
        else:
            liveness = 1.0
            anti_spoof = 1.0

        reason = None
        if quality < self.config.quality_threshold:
            reason = DecisionReason.LOW_QUALITY
        elif require_liveness and (
            liveness < self.config.liveness_threshold
            or anti_spoof < self.config.anti_spoof_threshold
        ):
            reason = DecisionReason.NOT_LIVE

        return GateResult(
            quality=quality,
            liveness=liveness,
            anti_spoof=anti_spoof,
            eligible=reason is None,
            reason=reason,
            subscores=subscores,
        )
