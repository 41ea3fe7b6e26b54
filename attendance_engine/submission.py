"""
Attendance record persistence and submission.

The record store is the durable owner of attendance records and their manual
review state; the submission channel forwards records to the backend API.
New records enter both only through the reconciler's final emission step.
"""

import dataclasses
import queue
import threading
import time
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

import numpy as np
import requests

from .config import Config
from .errors import UnknownRecord
from .logging_config import get_logger
from .models import REVIEW_STATUSES, AttendanceRecord, RecordStatus, RecordType
from .serialization import record_to_dict
from .utils.timing import retry_with_backoff

logger = get_logger(__name__)

RecordKey = Tuple[str, str, RecordType]

HISTORY_LIMIT = 100


class RecordStore(Protocol):
    """Durable owner of attendance records."""

    def exists(self, identity_id: str, session_id: str, record_type: RecordType) -> bool:
        ...

    def save(self, record: AttendanceRecord) -> None:
        ...

    def for_identity(
        self,
        identity_id: str,
        start: Optional[float] = None,
        end: Optional[float] = None,
        limit: int = HISTORY_LIMIT
    ) -> List[AttendanceRecord]:
        ...

    def flagged(self) -> List[AttendanceRecord]:
        ...

    def update_status(
        self,
        record_id: str,
        status: RecordStatus,
        verified_by: Optional[str] = None
    ) -> AttendanceRecord:
        ...

    def summary(self) -> Dict[str, Any]:
        ...


class SubmissionChannel(Protocol):
    """Forwards records to an external consumer; returns True on success."""

    def submit(self, record: AttendanceRecord) -> bool:
        ...


def _newest_first(records: Iterable[AttendanceRecord]) -> List[AttendanceRecord]:
    return sorted(records, key=lambda r: r.created_at, reverse=True)


class InMemoryRecordStore:
    """Record store keyed by (identity_id, session_id, record_type)."""

    def __init__(self):
        self._records: Dict[RecordKey, AttendanceRecord] = {}
        self._keys_by_id: Dict[str, RecordKey] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def exists(self, identity_id: str, session_id: str, record_type: RecordType) -> bool:
        return (identity_id, session_id, record_type) in self._records

    def save(self, record: AttendanceRecord) -> None:
        with self._lock:
            # First record for a key wins
            if record.key in self._records:
                return
            self._records[record.key] = record
            self._keys_by_id[record.record_id] = record.key

    def get(self, record_id: str) -> Optional[AttendanceRecord]:
        key = self._keys_by_id.get(record_id)
        return self._records.get(key) if key is not None else None

    def records(self) -> List[AttendanceRecord]:
        with self._lock:
            return list(self._records.values())

    def for_identity(
        self,
        identity_id: str,
        start: Optional[float] = None,
        end: Optional[float] = None,
        limit: int = HISTORY_LIMIT
    ) -> List[AttendanceRecord]:
        """
        Attendance history of one identity, newest first.

        Args:
            identity_id: Identity to look up
            start: Earliest created_at to include
            end: Latest created_at to include
            limit: Maximum number of records returned
        """
        matching = [
            r for r in self.records()
            if r.identity_id == identity_id
            and (start is None or r.created_at >= start)
            and (end is None or r.created_at <= end)
        ]
        return _newest_first(matching)[:limit]

    def flagged(self) -> List[AttendanceRecord]:
        """Records still awaiting manual review, newest first."""
        return _newest_first(r for r in self.records() if r.status in REVIEW_STATUSES)

    def update_status(
        self,
        record_id: str,
        status: RecordStatus,
        verified_by: Optional[str] = None
    ) -> AttendanceRecord:
        """
        Apply a manual review decision to a record.

        Raises:
            UnknownRecord: If no record has this id
        """
        status = RecordStatus(status)
        with self._lock:
            key = self._keys_by_id.get(record_id)
            if key is None:
                raise UnknownRecord(record_id)
            updated = dataclasses.replace(
                self._records[key],
                status=status,
                verified_by=verified_by,
                processed_at=time.time(),
            )
            self._records[key] = updated

        logger.info(
            f'Record {record_id} marked {status.value}'
            + (f' by {verified_by}' if verified_by else '')
        )
        return updated

    def summary(self) -> Dict[str, Any]:
        """Record counts per status and the mean confidence."""
        records = self.records()
        counts = Counter(r.status for r in records)
        return {
            'totalRecords': len(records),
            'verifiedRecords': counts[RecordStatus.VERIFIED],
            'flaggedRecords': counts[RecordStatus.FLAGGED],
            'pendingRecords': counts[RecordStatus.PENDING],
            'rejectedRecords': counts[RecordStatus.REJECTED],
            'averageConfidence': (
                float(np.mean([r.confidence for r in records])) if records else 0.0
            ),
        }


class HttpSubmissionChannel:
    """Posts attendance records to the backend API."""

    def __init__(self, config: Config, retry_delay: float = 0.5):
        """
        Args:
            config: Engine configuration (backend_url, timeouts, retries)
            retry_delay: Initial delay between attempts
        """
        self.config = config
        self.retry_delay = retry_delay
        self.url = f"{config.backend_url.rstrip('/')}/api/attendance"

    def _post(self, payload: Dict) -> requests.Response:
        return requests.post(self.url, json=payload, timeout=self.config.submission_timeout)

    def submit(self, record: AttendanceRecord) -> bool:
        """
        Send one attendance record to the backend.

        Timeouts and connection errors are retried with backoff; HTTP error
        statuses are not.

        Returns:
            True if the record was accepted by the backend
        """
        payload = record_to_dict(record)
        logger.info(
            f'📤 Sending {record.record_type.value} record for {record.identity_id} '
            f'(session {record.session_id})'
        )

        try:
            response = retry_with_backoff(
                lambda: self._post(payload),
                max_attempts=self.config.submission_retries,
                initial_delay=self.retry_delay,
                retry_on=(requests.exceptions.Timeout, requests.exceptions.ConnectionError),
            )
        except requests.exceptions.Timeout:
            logger.error(f'❌ Timeout sending record to {self.url}')
            return False
        except requests.exceptions.ConnectionError:
            logger.error(f'❌ Connection error sending record to {self.url}')
            return False
        except requests.exceptions.RequestException as e:
            logger.error(f'❌ Error sending record: {e}')
            return False

        if response.ok:
            logger.info('✅ Record sent successfully')
            return True

        logger.error(f'❌ Failed to send record: {response.status_code} {response.text}')
        return False


class SubmissionQueue:
    """
    Asynchronous wrapper around a submission channel.

    submit() only enqueues; a worker thread delivers. stop() cancels the
    pending records and hands them back to the caller.
    """

    def __init__(self, channel: SubmissionChannel, poll_interval: float = 0.1):
        self.channel = channel
        self.poll_interval = poll_interval
        self.failed: List[AttendanceRecord] = []
        self.sent = 0
        self._queue: 'queue.Queue[AttendanceRecord]' = queue.Queue()
        self._stop_flag = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the delivery thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_flag.clear()
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name='AttendanceSubmission'
        )
        self._thread.start()

    def submit(self, record: AttendanceRecord) -> bool:
        """Enqueue a record; returns True once queued."""
        self._queue.put(record)
        return True

    def pending(self) -> int:
        return self._queue.qsize()

    def flush(self, timeout: float = 5.0) -> bool:
        """
        Wait until every queued record was handled.

        Returns:
            True if the queue drained within timeout
        """
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def stop(self, timeout: float = 5.0) -> List[AttendanceRecord]:
        """
        Stop the worker and cancel undelivered records.

        Returns:
            Records that were still queued
        """
        self._stop_flag.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)

        cancelled = []
        while True:
            try:
                cancelled.append(self._queue.get_nowait())
            except queue.Empty:
                break
            self._queue.task_done()

        if cancelled:
            logger.warning(f'Submission stopped with {len(cancelled)} records undelivered')
        return cancelled

    def _run(self) -> None:
        while not self._stop_flag.is_set():
            try:
                record = self._queue.get(timeout=self.poll_interval)
            except queue.Empty:
                continue

            try:
                if self.channel.submit(record):
                    self.sent += 1
                else:
                    self.failed.append(record)
            except Exception as e:
                logger.error(f'Submission channel crashed on record {record.record_id}: {e}', exc_info=True)
                self.failed.append(record)
            finally:
                self._queue.task_done()
