"""
Embedding matching module.

Matches face embeddings against enrolled identities using cosine similarity,
with a closed acceptance threshold and an explicit ambiguity margin.
"""

from typing import Optional, Sequence, Tuple

import numpy as np

from ..config import Config
from ..models import DecisionReason, MatchDecision

EMPTY_SCORE = -1.0


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    Cosine similarity of two vectors: a·b / (||a|| * ||b||).

    Raises:
        ValueError: If the shapes differ
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f'Embedding shapes do not match: {a.shape} vs {b.shape}')
    return float(np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b)))


def cosine_similarities(embedding: np.ndarray, templates: np.ndarray) -> np.ndarray:
    """
    Cosine similarity of one embedding against every row of a template matrix.

    Args:
        embedding: Query vector of shape (D,)
        templates: Matrix of shape (N, D)

    Returns:
        Array of N similarities
    """
    embedding = np.asarray(embedding, dtype=np.float64)
    templates = np.asarray(templates, dtype=np.float64)
    norms = np.linalg.norm(templates, axis=1) * np.linalg.norm(embedding)
    return (templates @ embedding) / norms


def match_embedding(
    embedding: np.ndarray,
    identities: Sequence[Tuple[str, np.ndarray]],
    config: Config
) -> MatchDecision:
    """
    Match an embedding against enrolled identities.

    Candidates are ranked by score, then by identity id, so the result does
    not depend on the order identities were enrolled in.

    Args:
        embedding: Embedding to match (need not be normalized)
        identities: (identity_id, active_template) pairs
        config: Engine configuration

    Returns:
        MatchDecision; identity_id is None unless accepted.
        An empty identity set yields score -1.0.
    """
    if len(identities) == 0:
        return MatchDecision(
            identity_id=None,
            score=EMPTY_SCORE,
            runner_up_score=EMPTY_SCORE,
            accepted=False,
            reason=DecisionReason.NO_CANDIDATES,
        )

    ids = [identity_id for identity_id, _ in identities]
    templates = np.vstack([template for _, template in identities])
    similarities = cosine_similarities(embedding, templates)

    ranked = sorted(
        zip(similarities.tolist(), ids),
        key=lambda item: (-item[0], item[1])
    )
    best_score, best_id = ranked[0]
    runner_up_score, runner_up_id = (
        ranked[1] if len(ranked) > 1 else (EMPTY_SCORE, None)
    )

    threshold = config.match_threshold
    reason = DecisionReason.ACCEPTED
    if best_score < threshold:
        reason = DecisionReason.BELOW_THRESHOLD
    elif (
        runner_up_score >= threshold
        and best_score - runner_up_score < config.ambiguity_margin
    ):
        reason = DecisionReason.AMBIGUOUS

    accepted = reason is DecisionReason.ACCEPTED
    return MatchDecision(
        identity_id=best_id if accepted else None,
        score=best_score,
        runner_up_score=runner_up_score,
        accepted=accepted,
        reason=reason,
        candidate_id=best_id,
        runner_up_id=runner_up_id,
    )


def best_conflict(
    embedding: np.ndarray,
    identities: Sequence[Tuple[str, np.ndarray]],
    exclude_id: str,
    config: Config
) -> Optional[Tuple[str, float]]:
    """
    Find another identity whose template scores at or above the threshold.

    Used by enrollment; ambiguity does not matter here, any hit is a conflict.

    Returns:
        (identity_id, score) of the best conflicting identity, or None
    """
    others = [(i, t) for i, t in identities if i != exclude_id]
    decision = match_embedding(embedding, others, config)
    if decision.candidate_id is not None and decision.score >= config.match_threshold:
        return decision.candidate_id, decision.score
    return None
