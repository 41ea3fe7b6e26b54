"""
Utility modules package.
"""

from .snapshot import get_identities_hash, load_snapshot, save_snapshot
from .timing import format_uptime, retry_with_backoff

__all__ = [
    'get_identities_hash',
    'load_snapshot',
    'save_snapshot',
    'format_uptime',
    'retry_with_backoff',
]
