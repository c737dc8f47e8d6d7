"""In-memory target store used for dry runs, tests and local migrations."""

import copy
import logging
import threading
from typing import Any, Dict, List, Optional

from .base import BaseLoader, TargetLookup
from ..exceptions import CommitError
from ..models.record import CommitResult, MappedRecord

logger = logging.getLogger(__name__)


class InMemoryLoader(BaseLoader, TargetLookup):
    """
    Thread-safe in-memory target CRM.

    Acts as both the commit sink and the existence lookup. A batch is staged
    completely before any record is written, so a failing batch leaves the
    store untouched.
    """

    def __init__(self, target_service: str = "memory", dry_run: bool = False):
        super().__init__(target_service, dry_run)
        self._records: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._next_id: Dict[str, int] = {}
        self._lock = threading.RLock()

    def seed(self, entity_type: str, records: List[Dict[str, Any]]) -> List[str]:
        """
        Add pre-existing records (e.g. data already in the target CRM).

        Records without an ``id`` get one assigned.

        Returns:
            IDs of the seeded records
        """
        ids = []
        with self._lock:
            store = self._records.setdefault(entity_type, {})
            for data in records:
                record_id = str(data["id"]) if data.get("id") not in (None, "") else self._allocate_id(entity_type)
                store[record_id] = {**copy.deepcopy(data), "id": record_id}
                ids.append(record_id)
        logger.debug(f"Seeded {len(ids)} {entity_type} records")
        return ids

    def _allocate_id(self, entity_type: str, reserved: Optional[set] = None) -> str:
        store = self._records.get(entity_type, {})
        next_id = self._next_id.get(entity_type, 1)
        while str(next_id) in store or (reserved and str(next_id) in reserved):
            next_id += 1
        self._next_id[entity_type] = next_id + 1
        return str(next_id)

    def check_record(self, entity_type: str, record: MappedRecord) -> None:
        """
        Hook for sink-side record checks. Raise to fail a single record.

        The default rejects an explicit id that is already taken.
        """
        record_id = record.data.get("id")
        if record_id not in (None, "") and str(record_id) in self._records.get(entity_type, {}):
            raise ValueError(f"{entity_type} id {record_id} already exists")

    def commit_record(self, entity_type: str, record: MappedRecord) -> CommitResult:
        return self.commit_batch(entity_type, [record])[0]

    def commit_batch(self, entity_type: str, records: List[MappedRecord]) -> List[CommitResult]:
        """Stage every record, then write the successful ones together."""
        results: List[CommitResult] = []
        staged: Dict[str, Dict[str, Any]] = {}

        with self._lock:
            for record in records:
                try:
                    self.check_record(entity_type, record)
                    explicit_id = record.data.get("id")
                    if explicit_id not in (None, ""):
                        record_id = str(explicit_id)
                        if record_id in staged:
                            raise ValueError(f"{entity_type} id {record_id} appears twice in batch")
                    else:
                        record_id = self._allocate_id(entity_type, reserved=set(staged))
                except CommitError:
                    raise
                except Exception as e:
                    results.append(CommitResult(
                        source_row_number=record.source_row_number,
                        success=False,
                        error=str(e),
                        error_code="rejected",
                    ))
                    continue

                staged[record_id] = {**copy.deepcopy(record.data), "id": record_id}
                results.append(CommitResult(
                    source_row_number=record.source_row_number,
                    success=True,
                    target_id=record_id,
                ))

            if not self.dry_run:
                self._records.setdefault(entity_type, {}).update(staged)

        logger.debug(f"Committed {len(staged)}/{len(records)} {entity_type} records")
        return results

    def delete_record(self, entity_type: str, record_id: str) -> bool:
        with self._lock:
            return self._records.get(entity_type, {}).pop(str(record_id), None) is not None

    def exists(self, entity_type: str, record_id: str) -> bool:
        with self._lock:
            return str(record_id).strip() in self._records.get(entity_type, {})

    def find_by_natural_key(self, entity_type: str, field: str, value: str) -> Optional[str]:
        """Case-insensitive match on a stored field."""
        wanted = str(value).strip().lower()
        with self._lock:
            for record_id, data in self._records.get(entity_type, {}).items():
                current = data.get(field)
                if current is not None and str(current).strip().lower() == wanted:
                    return record_id
        return None

    def get(self, entity_type: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            data = self._records.get(entity_type, {}).get(str(record_id))
            return copy.deepcopy(data) if data is not None else None

    def all(self, entity_type: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(d) for d in self._records.get(entity_type, {}).values()]

    def count(self, entity_type: str) -> int:
        with self._lock:
            return len(self._records.get(entity_type, {}))
