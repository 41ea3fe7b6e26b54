"""
Face tracking module.

Groups the observations of one capture session into tracks using IoU
(Intersection over Union) matching and a frame-gap budget, and resolves each
track to an identity from its accumulated match decisions.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..config import Config
from ..errors import InvalidObservation, SessionClosed
from ..logging_config import get_logger, get_session_logger
from ..models import (
    DecisionReason,
    FrameResult,
    GateResult,
    MatchDecision,
    Observation,
    SessionState,
)
from .matching import match_embedding
from .quality import QualityGate, validate_observation

logger = get_logger(__name__)

GATE_REASONS = (DecisionReason.LOW_QUALITY, DecisionReason.NOT_LIVE)


def compute_iou(bbox1: np.ndarray, bbox2: np.ndarray) -> float:
    """
    Compute Intersection over Union for two bounding boxes.

    Args:
        bbox1: First bbox [x1, y1, x2, y2]
        bbox2: Second bbox [x1, y1, x2, y2]

    Returns:
        IoU value in range [0, 1]
    """
    x1_min, y1_min, x1_max, y1_max = bbox1
    x2_min, y2_min, x2_max, y2_max = bbox2

    # Intersection
    inter_x_min = max(x1_min, x2_min)
    inter_y_min = max(y1_min, y2_min)
    inter_x_max = min(x1_max, x2_max)
    inter_y_max = min(y1_max, y2_max)

    inter_area = max(0, inter_x_max - inter_x_min) * max(0, inter_y_max - inter_y_min)

    # Union
    bbox1_area = (x1_max - x1_min) * (y1_max - y1_min)
    bbox2_area = (x2_max - x2_min) * (y2_max - y2_min)
    union_area = bbox1_area + bbox2_area - inter_area

    if union_area == 0:
        return 0.0

    return float(inter_area / union_area)


class FaceTrack:
    """
    Represents a single face track across frames of one session.

    Accumulates observations, gate results and match decisions, and keeps
    the resolved identity stable against single-frame noise.
    """

    def __init__(self, track_id: int, log: Optional[logging.LoggerAdapter] = None):
        """
        Initialize face track.

        Args:
            track_id: Unique track identifier within the session
            log: Session logger (module logger if omitted)
        """
        self.track_id = track_id
        self.log = log or logger
        self.observations: List[Observation] = []
        self.gate_results: List[GateResult] = []
        self.decisions: List[MatchDecision] = []
        self.last_bbox: Optional[np.ndarray] = None
        self.last_frame_index: int = -1
        self.last_update_time: float = 0.0
        self.resolved_identity: Optional[str] = None
        self.representative: Optional[MatchDecision] = None
        self.representative_liveness: float = 0.0
        self.best_rejected: Optional[MatchDecision] = None
        self.streak: List[Tuple[MatchDecision, GateResult]] = []

    @property
    def representative_score(self) -> Optional[float]:
        return self.representative.score if self.representative else None

    @property
    def disagreement_streak(self) -> int:
        return len(self.streak)

    @property
    def eligible_qualities(self) -> List[float]:
        return [g.quality for g in self.gate_results if g.eligible]

    def can_extend(self, frame_index: int, gap_budget: int) -> bool:
        """
        Check whether an observation at frame_index may join this track.

        Args:
            frame_index: Index of the processed frame
            gap_budget: Maximum frame distance from the last update

        Returns:
            True if within budget and not already updated in this frame
        """
        if self.last_bbox is None:
            return False
        gap = frame_index - self.last_frame_index
        return 0 < gap <= gap_budget

    def add_observation(
        self,
        observation: Observation,
        frame_index: int,
        gate: GateResult,
        decision: MatchDecision,
        revoke_after: int
    ) -> None:
        """
        Append an observation with its gate result and decision.

        Args:
            observation: Observation to add
            frame_index: Processed frame index
            gate: Gate result for the observation
            decision: Match decision (gate-rejected decisions included)
            revoke_after: Consecutive disagreements that unresolve the track
        """
        self.observations.append(observation)
        self.gate_results.append(gate)
        self.decisions.append(decision)
        self.last_bbox = observation.bbox
        self.last_frame_index = frame_index
        self.last_update_time = observation.captured_at

        if not decision.accepted:
            self._note_rejected(decision)

        self._resolve(decision, gate, revoke_after)

    def _note_rejected(self, decision: MatchDecision) -> None:
        if self.best_rejected is None or decision.score > self.best_rejected.score:
            self.best_rejected = decision

    def _resolve(self, decision: MatchDecision, gate: GateResult, revoke_after: int) -> None:
        if decision.reason in GATE_REASONS:
            # No match attempted; neither agreement nor disagreement
            return

        if decision.accepted:
            if self.resolved_identity is None:
                self._set_identity(decision, gate)
                self.log.info(
                    f'Track {self.track_id} → identity {decision.identity_id} '
                    f'(score: {decision.score:.3f}, observations: {len(self.observations)})'
                )
                return
            if decision.identity_id == self.resolved_identity:
                self.streak = []
                if decision.score > self.representative.score:
                    self._set_identity(decision, gate)
                return
            if decision.score > self.representative.score:
                self.log.info(
                    f'Track {self.track_id} upgraded {self.resolved_identity} → '
                    f'{decision.identity_id} ({self.representative.score:.3f} → {decision.score:.3f})'
                )
                self._set_identity(decision, gate)
                return

        if self.resolved_identity is None:
            return

        self.streak.append((decision, gate))
        if len(self.streak) >= revoke_after:
            self._revoke()

    def _revoke(self) -> None:
        """
        Settle a full disagreement streak.

        A streak of accepted decisions for one other identity hands the track
        to that identity at its best streak score. Any other streak leaves the
        track unresolved.
        """
        previous = self.representative
        streak, self.streak = self.streak, []
        accepted = [(d, g) for d, g in streak if d.accepted]
        streak_ids = {d.identity_id for d, _ in accepted}

        if len(accepted) == len(streak) and len(streak_ids) == 1:
            decision, gate = max(accepted, key=lambda item: item[0].score)
            self.log.info(
                f'Track {self.track_id} reassigned {previous.identity_id} → '
                f'{decision.identity_id} after {len(streak)} consistent frames'
            )
            self._set_identity(decision, gate)
            return

        self.log.info(
            f'Track {self.track_id} revoked identity {previous.identity_id} '
            f'after {len(streak)} disagreeing frames'
        )
        if accepted and len(accepted) == len(streak):
            self._note_rejected(_contested(previous, [d for d, _ in accepted]))
        self.resolved_identity = None
        self.representative = None
        self.representative_liveness = 0.0

    def _set_identity(self, decision: MatchDecision, gate: GateResult) -> None:
        self.resolved_identity = decision.identity_id
        self.representative = decision
        self.representative_liveness = gate.liveness
        self.streak = []


def _contested(previous: MatchDecision, accepted: Sequence[MatchDecision]) -> MatchDecision:
    """Rejected decision summarizing a track claimed by several identities."""
    ranked = sorted([previous, *accepted], key=lambda d: (-d.score, d.identity_id))
    top = ranked[0]
    runner_up = next(d for d in ranked if d.identity_id != top.identity_id)
    return MatchDecision(
        identity_id=None,
        score=top.score,
        runner_up_score=runner_up.score,
        accepted=False,
        reason=DecisionReason.AMBIGUOUS,
        candidate_id=top.identity_id,
        runner_up_id=runner_up.identity_id,
    )


class FaceTracker:
    """
    Per-session track aggregator.

    States: open → observing → closed. Closing is terminal; a closed tracker
    rejects further frames with SessionClosed.
    """

    def __init__(self, session_id: str, config: Config, gate: QualityGate):
        """
        Initialize face tracker.

        Args:
            session_id: Owning session identifier
            config: Engine configuration
            gate: Quality and liveness gate
        """
        self.session_id = session_id
        self.log = get_session_logger(logger, session_id)
        self.config = config
        self.gate = gate
        self.tracks: List[FaceTrack] = []
        self.next_track_id = 1
        self.frame_index = 0
        self.state = SessionState.OPEN
        self.close_reason: Optional[str] = None
        self.invalid_count = 0
        self.dropped_count = 0

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    def close(self, reason: str) -> bool:
        """
        Transition to closed.

        Returns:
            True if this call closed the tracker, False if it was already closed
        """
        if self.closed:
            return False
        self.state = SessionState.CLOSED
        self.close_reason = reason
        self.log.debug(f'Closed ({reason}), {len(self.tracks)} tracks')
        return True

    def update(
        self,
        observations: Sequence[Observation],
        identities: Sequence[Tuple[str, np.ndarray]],
        require_liveness: Optional[bool] = None
    ) -> FrameResult:
        """
        Process one frame of observations.

        Malformed observations are rejected individually and reported in the
        result; the rest of the frame is processed normally.

        Args:
            observations: Observations detected in this frame
            identities: Store snapshot (identity_id, template) pairs
            require_liveness: Liveness requirement for this session

        Returns:
            FrameResult aligned with the processed observations

        Raises:
            SessionClosed: If the tracker is closed
        """
        if self.closed:
            raise SessionClosed(self.session_id, self.close_reason)

        self.state = SessionState.OBSERVING
        self.frame_index += 1
        result = FrameResult(session_id=self.session_id, frame_index=self.frame_index)

        valid: List[Observation] = []
        for observation in observations:
            try:
                validate_observation(observation, self.config)
            except InvalidObservation as e:
                self._reject(result, e)
                continue
            valid.append(observation)

        # Largest faces first
        valid.sort(key=lambda o: o.area, reverse=True)
        limit = self.config.max_faces_per_frame
        if len(valid) > limit:
            result.dropped = len(valid) - limit
            self.dropped_count += result.dropped
            self.log.warning(
                f'Frame {self.frame_index}: '
                f'{len(valid)} faces, dropping {result.dropped} smallest'
            )
            valid = valid[:limit]

        assignments = self._assign_tracks(valid)

        for idx, observation in enumerate(valid):
            track = assignments.get(idx)
            history = track.observations if track else []
            try:
                gate = self.gate.evaluate(observation, history, require_liveness)
            except InvalidObservation as e:
                self._reject(result, e)
                continue

            if gate.eligible:
                decision = match_embedding(observation.embedding, identities, self.config)
            else:
                decision = MatchDecision.gate_rejected(gate)

            if track is None:
                track = FaceTrack(self.next_track_id, self.log)
                self.next_track_id += 1
                self.tracks.append(track)
                self.log.debug(f'Created track {track.track_id}')

            track.add_observation(
                observation, self.frame_index, gate, decision, self.config.revoke_after
            )
            result.track_ids.append(track.track_id)
            result.decisions.append(decision)
            result.gate_results.append(gate)

        return result

    def _reject(self, result: FrameResult, error: InvalidObservation) -> None:
        self.invalid_count += 1
        result.invalid.append(str(error))
        self.log.warning(f'Rejected observation: {error}')

    def _assign_tracks(self, observations: Sequence[Observation]) -> Dict[int, FaceTrack]:
        """
        Greedily pair observations with extendable tracks, highest IoU first.

        Args:
            observations: Valid observations of the current frame

        Returns:
            Mapping of observation index to matched track
        """
        candidates = []
        for track in self.tracks:
            if not track.can_extend(self.frame_index, self.config.track_frame_gap_budget):
                continue
            for idx, observation in enumerate(observations):
                iou = compute_iou(observation.bbox, track.last_bbox)
                if iou >= self.config.track_iou_threshold and iou > 0.0:
                    candidates.append((iou, track.track_id, idx, track))

        candidates.sort(key=lambda c: (-c[0], c[1], c[2]))

        assignments: Dict[int, FaceTrack] = {}
        used_tracks = set()
        for _, track_id, idx, track in candidates:
            if idx in assignments or track_id in used_tracks:
                continue
            assignments[idx] = track
            used_tracks.add(track_id)

        return assignments
