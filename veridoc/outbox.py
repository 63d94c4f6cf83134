"""File-backed queue of certificate records whose database insert failed.

The certificate is already registered on chain when an entry lands here, so
the queue is replayed later instead of being discarded.
"""
import json
import logging
import os
import tempfile
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class Outbox:

    def __init__(self, path: str, max_attempts: int = 5):
        self.path = path
        self.max_attempts = max_attempts
        self._lock = threading.Lock()

    def _read(self) -> List[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Outbox file {self.path} is unreadable: {e}")
            raise
        return data if isinstance(data, list) else []

    def _write(self, entries: List[Dict[str, Any]]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.outbox-', suffix='.json')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(entries, f, indent=2, default=str)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def enqueue(self, record: Dict[str, Any], error: str = '') -> str:
        entry = {
            'id': str(uuid.uuid4()),
            'record': record,
            'attempts': 0,
            'last_error': error,
            'queued_at': datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            entries = self._read()
            entries.append(entry)
            self._write(entries)
        logger.warning(f"Certificate {record.get('certificate_id')} queued in outbox ({len(entries)} pending)")
        return entry['id']

    def pending(self) -> List[Dict[str, Any]]:
        with self._lock:
            return self._read()

    def __len__(self):
        return len(self.pending())

    def clear(self) -> int:
        with self._lock:
            count = len(self._read())
            if os.path.exists(self.path):
                os.remove(self.path)
        return count

    def flush(self, deliver: Callable[[Dict[str, Any]], None]) -> Dict[str, int]:
        """Calls ``deliver`` once per entry.

        Delivered entries are removed; failed ones keep their attempt count and
        are dropped once it reaches ``max_attempts``.
        """
        with self._lock:
            entries = self._read()
            processed = 0
            remaining = []
            dropped = 0

            for entry in entries:
                try:
                    deliver(entry['record'])
                    processed += 1
                    logger.info(f"Outbox entry {entry['id']} delivered")
                except Exception as e:
                    entry['attempts'] += 1
                    entry['last_error'] = str(e)
                    if entry['attempts'] >= self.max_attempts:
                        dropped += 1
                        logger.error(f"Outbox entry {entry['id']} dropped after {entry['attempts']} attempts: {e}")
                    else:
                        remaining.append(entry)
                        logger.warning(f"Outbox entry {entry['id']} failed (attempt {entry['attempts']}): {e}")

            if entries:
                self._write(remaining)

        return {'processed': processed, 'remaining': len(remaining), 'dropped': dropped}
