"""
Store snapshot file module.

Persists exported embedding store state as JSON to avoid re-fetching and
re-validating every template on restart.
"""

import hashlib
import json
import os
import time
from typing import Any, Dict, List, Optional

from ..logging_config import get_logger

logger = get_logger(__name__)


def get_identities_hash(identities: List[Dict[str, Any]]) -> str:
    """
    Compute hash of a backend identity list for snapshot validation.

    Args:
        identities: List of identity dicts (userId, embedding)

    Returns:
        SHA-256 hash string
    """
    data = json.dumps(
        sorted(identities, key=lambda i: str(i.get('userId', ''))),
        sort_keys=True,
        separators=(',', ':'),
    )
    return hashlib.sha256(data.encode()).hexdigest()


def save_snapshot(
    state: Dict[str, Any],
    snapshot_file: str,
    source_hash: Optional[str] = None
) -> bool:
    """
    Save store state to file.

    Writes to a temporary file first and renames it into place, so a crash
    never leaves a truncated snapshot behind.

    Args:
        state: Output of EmbeddingStore.export_state()
        snapshot_file: Path to snapshot file
        source_hash: Optional hash of the identity list the state was built from

    Returns:
        True if the snapshot was written
    """
    payload = dict(state)
    payload['savedAt'] = time.time()
    if source_hash is not None:
        payload['sourceHash'] = source_hash

    tmp_file = f'{snapshot_file}.tmp'
    try:
        with open(tmp_file, 'w', encoding='utf-8') as f:
            json.dump(payload, f)
        os.replace(tmp_file, snapshot_file)
    except OSError as e:
        logger.error(f'Failed to save snapshot: {e}')
        return False

    logger.info(f"Snapshot saved for {len(state.get('identities', []))} identities")
    return True


def load_snapshot(snapshot_file: str) -> Optional[Dict[str, Any]]:
    """
    Load store state from file.

    Args:
        snapshot_file: Path to snapshot file

    Returns:
        Snapshot dict, or None if the file is missing or unreadable
    """
    if not os.path.exists(snapshot_file):
        logger.debug('Snapshot file not found')
        return None

    try:
        with open(snapshot_file, 'r', encoding='utf-8') as f:
            state = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f'Failed to load snapshot: {e}')
        return None

    if not isinstance(state, dict):
        logger.error('Failed to load snapshot: not a JSON object')
        return None

    age = time.time() - state.get('savedAt', 0)
    logger.info(f'Snapshot found (age: {age:.0f} seconds)')
    return state
