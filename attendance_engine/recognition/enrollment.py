"""
Enrollment workflow.

Gates a candidate capture and commits it to the embedding store only if it
is of sufficient quality, live, and not already someone else's face.
"""

from typing import Optional, Sequence

import numpy as np

from ..config import Config
from ..errors import DuplicateIdentity, InvalidObservation, LowQuality, NotLive
from ..logging_config import get_logger
from ..models import DecisionReason, GateResult, Identity, Observation
from .matching import best_conflict
from .quality import QualityGate
from .store import EmbeddingStore

logger = get_logger(__name__)


class EnrollmentWorkflow:
    """Enrollment and re-enrollment on top of an EmbeddingStore."""

    def __init__(self, config: Config, store: EmbeddingStore, gate: QualityGate):
        self.config = config
        self.store = store
        self.gate = gate

    def _check_gate(self, identity_id: str, gate: GateResult) -> None:
        if gate.eligible:
            return
        if gate.reason is DecisionReason.NOT_LIVE:
            raise NotLive(identity_id, gate.liveness, gate.anti_spoof)
        raise LowQuality(identity_id, gate.quality)

    def _duplicate_check(self, identity_id: str, embedding: np.ndarray):
        def check(snapshot):
            conflict = best_conflict(embedding, snapshot, identity_id, self.config)
            if conflict is not None:
                conflicting_id, score = conflict
                raise DuplicateIdentity(identity_id, conflicting_id, score)
        return check

    def enroll_candidate(
        self,
        identity_id: str,
        observation: Observation,
        require_liveness: Optional[bool] = None
    ) -> Identity:
        """
        Enroll a new identity from one capture.

        Args:
            identity_id: Caller-assigned identity key
            observation: Enrollment capture
            require_liveness: Override of config.require_liveness

        Returns:
            The enrolled Identity

        Raises:
            LowQuality: Capture failed the quality composite
            NotLive: Capture failed liveness or anti-spoof
            DuplicateIdentity: Face already matches another enrolled identity
            AlreadyEnrolled: Identity already has an active template
            InvalidObservation: Observation is malformed
        """
        gate = self.gate.evaluate(observation, (), require_liveness)
        self._check_gate(identity_id, gate)

        try:
            return self.store.enroll(
                identity_id,
                observation.embedding,
                check=self._duplicate_check(identity_id, observation.embedding),
            )
        except DuplicateIdentity as e:
            logger.warning(f'⚠️ {e}')
            raise

    def re_enroll_candidate(
        self,
        identity_id: str,
        observation: Observation,
        require_liveness: Optional[bool] = None
    ) -> Identity:
        """
        Replace an enrolled identity's template after the same checks as enrollment.

        Raises:
            UnknownIdentity: Identity is not enrolled
            LowQuality, NotLive, DuplicateIdentity: As for enroll_candidate
        """
        gate = self.gate.evaluate(observation, (), require_liveness)
        self._check_gate(identity_id, gate)

        try:
            return self.store.re_enroll(
                identity_id,
                observation.embedding,
                check=self._duplicate_check(identity_id, observation.embedding),
            )
        except DuplicateIdentity as e:
            logger.warning(f'⚠️ {e}')
            raise

    def enroll_from_burst(
        self,
        identity_id: str,
        observations: Sequence[Observation],
        require_liveness: Optional[bool] = None
    ) -> Identity:
        """
        Enroll from several captures of the same person.

        Each capture is gated with the earlier ones as history; the
        normalized embeddings of the eligible captures are averaged into a
        single template.

        Raises:
            InvalidObservation: Burst is empty
            LowQuality, NotLive: No capture passed the gate (reason of the best one)
            DuplicateIdentity, AlreadyEnrolled: As for enroll_candidate
        """
        if not observations:
            raise InvalidObservation('Enrollment burst is empty')

        eligible = []
        best_rejection: Optional[GateResult] = None
        for idx, observation in enumerate(observations):
            gate = self.gate.evaluate(observation, observations[:idx], require_liveness)
            if gate.eligible:
                eligible.append(observation.embedding / np.linalg.norm(observation.embedding))
            elif best_rejection is None or gate.quality > best_rejection.quality:
                best_rejection = gate

        if not eligible:
            self._check_gate(identity_id, best_rejection)

        template = np.mean(eligible, axis=0)
        logger.info(
            f'Burst enrollment for {identity_id}: '
            f'{len(eligible)}/{len(observations)} captures eligible'
        )

        try:
            return self.store.enroll(
                identity_id,
                template,
                check=self._duplicate_check(identity_id, template),
            )
        except DuplicateIdentity as e:
            logger.warning(f'⚠️ {e}')
            raise
