"""
Identity loading module.

Hydrates the embedding store from the backend's identity list, with a
local snapshot file that keeps local enrollments across restarts and
serves as offline fallback.
"""

from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import requests

from .config import Config
from .errors import EngineError, SnapshotFormatError
from .logging_config import get_logger
from .recognition.quality import validate_embedding
from .recognition.store import EmbeddingStore
from .utils.snapshot import get_identities_hash, load_snapshot, save_snapshot

logger = get_logger(__name__)


def fetch_identities(config: Config) -> List[Dict[str, Any]]:
    """
    Fetch enrolled identities from the backend.

    Returns:
        List of {'userId': ..., 'embedding': [...]} dicts

    Raises:
        requests.exceptions.RequestException: On network or HTTP errors
    """
    url = f"{config.backend_url.rstrip('/')}/api/identities"
    response = requests.get(url, timeout=10)
    response.raise_for_status()
    identities = response.json()
    logger.info(f'Fetched {len(identities)} identities from backend')
    return identities


def restore_snapshot(store: EmbeddingStore, snapshot: Optional[Dict]) -> bool:
    """Load a snapshot dict into the store; False if missing or rejected."""
    if snapshot is None:
        return False
    try:
        store.load_state(snapshot)
    except SnapshotFormatError as e:
        logger.warning(f'Snapshot rejected: {e}')
        return False
    return True


def load_identities_from_backend(config: Config, store: EmbeddingStore) -> int:
    """
    Hydrate the store from the local snapshot and the backend's identities.

    The snapshot file is restored first, so identities enrolled or removed
    locally survive a restart. When the backend list is unchanged since the
    last sync (same source hash) the snapshot is used as is; otherwise the
    backend entries are merged over it, adding missing identities and
    replacing templates that differ. If the backend is unreachable, the
    snapshot alone is used.

    Args:
        config: Engine configuration (backend_url, snapshot_file)
        store: Store to hydrate

    Returns:
        Number of identities in the store afterwards

    Raises:
        requests.exceptions.RequestException: Backend unreachable and no usable snapshot
    """
    logger.info('Loading identities from backend...')
    snapshot = load_snapshot(config.snapshot_file)
    restored = restore_snapshot(store, snapshot)

    try:
        identities = fetch_identities(config)
    except requests.exceptions.RequestException as e:
        logger.error(f'Failed to fetch identities from backend: {e}')
        if restored:
            logger.warning(f'⚠️ Using snapshot with {len(store)} identities (backend offline)')
            return len(store)
        raise

    current_hash = get_identities_hash(identities)
    if restored and snapshot.get('sourceHash') == current_hash:
        logger.info(f'✅ Using snapshot for {len(store)} identities')
        return len(store)

    logger.info('Backend identities changed since last sync, merging...')
    added, updated = _merge_identities(config, store, identities)
    save_snapshot(store.export_state(), config.snapshot_file, current_hash)

    logger.info(
        f'✅ {len(store)} identities loaded '
        f'({added} added, {updated} updated from backend)'
    )
    return len(store)


def _merge_identities(
    config: Config,
    store: EmbeddingStore,
    identities: List[Dict[str, Any]]
) -> Tuple[int, int]:
    added = updated = 0
    for item in identities:
        identity_id = str(item.get('userId', ''))
        if not identity_id:
            logger.warning('Identity without userId, skipping')
            continue
        try:
            embedding = validate_embedding(item.get('embedding'), config.embedding_dim)
            current = store.get(identity_id)
            if current is None:
                store.enroll(identity_id, embedding)
                added += 1
            elif not np.array_equal(current.active_template, embedding):
                store.re_enroll(identity_id, embedding)
                updated += 1
        except (EngineError, TypeError, ValueError) as e:
            logger.error(f'Failed to load identity {identity_id}: {e}')
    return added, updated


def load_identities_from_snapshot(config: Config, store: EmbeddingStore) -> bool:
    """
    Hydrate the store from the snapshot file only.

    Returns:
        True if a valid snapshot was loaded
    """
    return restore_snapshot(store, load_snapshot(config.snapshot_file))


def persist_snapshot(config: Config, store: EmbeddingStore) -> bool:
    """
    Write the store to the snapshot file, empty or not.

    The source hash of the last backend sync is carried over so the next
    start still recognizes an unchanged backend list.

    Returns:
        True if the snapshot was written
    """
    previous = load_snapshot(config.snapshot_file)
    source_hash = previous.get('sourceHash') if previous is not None else None
    return save_snapshot(store.export_state(), config.snapshot_file, source_hash)
