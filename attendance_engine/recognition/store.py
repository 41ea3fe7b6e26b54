"""
Embedding store.

Holds one active template plus a bounded history per enrolled identity.
Writes publish a new immutable mapping under a short lock (copy-on-write),
so readers never block and never see a half-swapped template.
"""

import hashlib
import json
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..config import Config
from ..errors import AlreadyEnrolled, EnrollError, SnapshotFormatError, UnknownIdentity
from ..logging_config import get_logger
from ..models import Identity
from .quality import validate_embedding

logger = get_logger(__name__)

SNAPSHOT_FORMAT = 'attendance-engine/embedding-store'
SNAPSHOT_VERSION = 1

EnrollCheck = Callable[[Sequence[Tuple[str, np.ndarray]]], None]


def _frozen(vec: np.ndarray) -> np.ndarray:
    arr = np.array(vec, dtype=np.float64, copy=True)
    arr.setflags(write=False)
    return arr


def _checksum(identities: List[Dict]) -> str:
    payload = json.dumps(identities, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(payload.encode()).hexdigest()


class EmbeddingStore:
    """
    In-memory template store, one instance per engine.

    Templates are stored read-only; callers get the same arrays back and
    cannot mutate them in place.
    """

    def __init__(self, config: Config):
        """
        Initialize an empty store.

        Args:
            config: Engine configuration (embedding_dim, template_history_bound)
        """
        self.config = config
        self._identities: Dict[str, Identity] = {}
        self._write_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._identities)

    def __contains__(self, identity_id: str) -> bool:
        return identity_id in self._identities

    def get(self, identity_id: str) -> Optional[Identity]:
        return self._identities.get(identity_id)

    def snapshot(self) -> List[Tuple[str, np.ndarray]]:
        """
        Return (identity_id, active_template) pairs.

        Reads one published mapping, so the result is consistent even while
        a re-enrollment is in flight.
        """
        current = self._identities
        return [(i.identity_id, i.active_template) for i in current.values()]

    def _publish(self, identity: Identity) -> None:
        updated = dict(self._identities)
        updated[identity.identity_id] = identity
        self._identities = updated

    def enroll(
        self,
        identity_id: str,
        embedding: np.ndarray,
        check: Optional[EnrollCheck] = None,
        now: Optional[float] = None
    ) -> Identity:
        """
        Enroll a new identity.

        Args:
            identity_id: Caller-assigned identity key
            embedding: Template embedding
            check: Optional precondition run under the write lock with the
                current snapshot; raising aborts the enrollment
            now: Enrollment timestamp (defaults to time.time())

        Returns:
            The enrolled Identity

        Raises:
            AlreadyEnrolled: If the identity already has an active template
            InvalidEmbedding: If the embedding is malformed
        """
        template = _frozen(validate_embedding(embedding, self.config.embedding_dim))

        with self._write_lock:
            if identity_id in self._identities:
                raise AlreadyEnrolled(identity_id)
            if check is not None:
                check(self.snapshot())

            identity = Identity(
                identity_id=identity_id,
                active_template=template,
                enrolled_at=time.time() if now is None else now,
            )
            self._publish(identity)

        logger.info(f'✅ Enrolled identity {identity_id} ({len(self)} enrolled)')
        return identity

    def re_enroll(
        self,
        identity_id: str,
        embedding: np.ndarray,
        check: Optional[EnrollCheck] = None
    ) -> Identity:
        """
        Replace an identity's active template, pushing the old one to history.

        History is trimmed oldest-first to config.template_history_bound.

        Raises:
            UnknownIdentity: If the identity is not enrolled
            InvalidEmbedding: If the embedding is malformed
        """
        template = _frozen(validate_embedding(embedding, self.config.embedding_dim))
        bound = self.config.template_history_bound

        with self._write_lock:
            current = self._identities.get(identity_id)
            if current is None:
                raise UnknownIdentity(identity_id)
            if check is not None:
                check(self.snapshot())

            history = current.template_history + (current.active_template,)
            if bound <= 0:
                history = ()
            elif len(history) > bound:
                history = history[-bound:]

            identity = Identity(
                identity_id=identity_id,
                active_template=template,
                template_history=history,
                enrolled_at=current.enrolled_at,
                last_matched_at=current.last_matched_at,
            )
            self._publish(identity)

        logger.info(
            f'Re-enrolled identity {identity_id} '
            f'(history: {len(identity.template_history)}/{bound})'
        )
        return identity

    def rollback(self, identity_id: str) -> Identity:
        """
        Restore the most recent history template as the active one.

        The current active template is discarded.

        Raises:
            UnknownIdentity: If the identity is not enrolled
            EnrollError: If there is no previous template
        """
        with self._write_lock:
            current = self._identities.get(identity_id)
            if current is None:
                raise UnknownIdentity(identity_id)
            if not current.template_history:
                raise EnrollError(identity_id, f'Identity {identity_id} has no previous template')

            identity = Identity(
                identity_id=identity_id,
                active_template=current.template_history[-1],
                template_history=current.template_history[:-1],
                enrolled_at=current.enrolled_at,
                last_matched_at=current.last_matched_at,
            )
            self._publish(identity)

        logger.info(f'Rolled back identity {identity_id} to previous template')
        return identity

    def remove(self, identity_id: str) -> None:
        """
        Remove an identity and its history.

        Raises:
            UnknownIdentity: If the identity is not enrolled
        """
        with self._write_lock:
            if identity_id not in self._identities:
                raise UnknownIdentity(identity_id)
            updated = dict(self._identities)
            del updated[identity_id]
            self._identities = updated

        logger.info(f'Removed identity {identity_id}')

    def touch(self, identity_id: str, when: Optional[float] = None) -> None:
        """Record a successful match; unknown identities are ignored."""
        with self._write_lock:
            current = self._identities.get(identity_id)
            if current is None:
                return
            self._publish(Identity(
                identity_id=current.identity_id,
                active_template=current.active_template,
                template_history=current.template_history,
                enrolled_at=current.enrolled_at,
                last_matched_at=time.time() if when is None else when,
            ))

    def export_state(self) -> Dict:
        """
        Serialize the store into the versioned snapshot format.

        Returns:
            JSON-compatible dict with format, version, embedding_dim,
            identities and a checksum over the identities
        """
        current = self._identities
        identities = [
            {
                'identity_id': i.identity_id,
                'active_template': i.active_template.tolist(),
                'template_history': [t.tolist() for t in i.template_history],
                'enrolled_at': i.enrolled_at,
                'last_matched_at': i.last_matched_at,
            }
            for i in sorted(current.values(), key=lambda i: i.identity_id)
        ]
        return {
            'format': SNAPSHOT_FORMAT,
            'version': SNAPSHOT_VERSION,
            'embedding_dim': self.config.embedding_dim,
            'identities': identities,
            'checksum': _checksum(identities),
        }

    def load_state(self, state: Dict) -> None:
        """
        Replace the store contents with a previously exported snapshot.

        Raises:
            SnapshotFormatError: On unknown format/version, dimension mismatch,
                checksum mismatch or malformed entries
        """
        if state.get('format') != SNAPSHOT_FORMAT:
            raise SnapshotFormatError(f"Unknown snapshot format: {state.get('format')!r}")
        if state.get('version') != SNAPSHOT_VERSION:
            raise SnapshotFormatError(f"Unsupported snapshot version: {state.get('version')!r}")
        if state.get('embedding_dim') != self.config.embedding_dim:
            raise SnapshotFormatError(
                f"Snapshot embedding_dim {state.get('embedding_dim')} does not match "
                f'configured {self.config.embedding_dim}'
            )

        entries = state.get('identities', [])
        if state.get('checksum') != _checksum(entries):
            raise SnapshotFormatError('Snapshot checksum mismatch')

        loaded: Dict[str, Identity] = {}
        dim = self.config.embedding_dim
        try:
            for entry in entries:
                loaded[entry['identity_id']] = Identity(
                    identity_id=entry['identity_id'],
                    active_template=_frozen(validate_embedding(entry['active_template'], dim)),
                    template_history=tuple(
                        _frozen(validate_embedding(t, dim))
                        for t in entry.get('template_history', [])
                    ),
                    enrolled_at=float(entry.get('enrolled_at', 0.0)),
                    last_matched_at=entry.get('last_matched_at'),
                )
        except (KeyError, TypeError, ValueError) as e:
            raise SnapshotFormatError(f'Malformed snapshot entry: {e}') from e

        with self._write_lock:
            self._identities = loaded

        logger.info(f'Loaded {len(loaded)} identities from snapshot')

    @classmethod
    def from_state(cls, state: Dict, config: Config) -> 'EmbeddingStore':
        store = cls(config)
        store.load_state(state)
        return store
