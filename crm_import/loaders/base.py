"""Base interfaces for the target CRM: existence lookups and the commit sink."""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple
import logging

from ..exceptions import CommitError
from ..models.record import CommitResult, MappedRecord

logger = logging.getLogger(__name__)


class TargetLookup(ABC):
    """
    Existence checks against the target CRM.

    Used by the reference and duplicate-record rules. Implementations may do
    I/O; the validator calls them from worker threads.
    """

    @abstractmethod
    def exists(self, entity_type: str, record_id: str) -> bool:
        """
        Check whether a record with this id exists.

        Args:
            entity_type: Entity kind (including reference-only kinds such as users)
            record_id: Target id to look up

        Returns:
            True if the record exists
        """
        pass

    @abstractmethod
    def find_by_natural_key(self, entity_type: str, field: str, value: str) -> Optional[str]:
        """
        Find an existing record by a business key.

        Returns:
            The existing record's id, or None
        """
        pass


class BaseLoader(ABC):
    """
    Base class for commit sinks.

    A commit sink writes validated records of one entity type and returns one
    CommitResult per record, in input order. A record is never dropped
    silently: per-record failures come back as unsuccessful results. Raising
    CommitError means the whole batch was aborted and nothing in it was written.
    """

    def __init__(self, target_service: str = "target", dry_run: bool = False):
        """
        Initialize the loader.

        Args:
            target_service: Name of the target service
            dry_run: If True, simulate without making changes
        """
        self.target_service = target_service
        self.dry_run = dry_run

    @abstractmethod
    def commit_record(self, entity_type: str, record: MappedRecord) -> CommitResult:
        """
        Write a single record.

        Args:
            entity_type: Entity type being committed
            record: Validated record (``data["id"]`` set when source ids are kept)

        Returns:
            CommitResult indicating success/failure
        """
        pass

    def commit_batch(self, entity_type: str, records: List[MappedRecord]) -> List[CommitResult]:
        """
        Commit a batch of records.

        Args:
            entity_type: Entity type being committed
            records: Validated records, in source row order

        Returns:
            One CommitResult per record, in the same order

        Raises:
            CommitError: if the sink failed the batch as a whole
        """
        results = []
        for record in records:
            try:
                result = self.commit_record(entity_type, record)
            except CommitError:
                raise
            except Exception as e:
                logger.error(f"Failed to commit {entity_type} row {record.source_row_number}: {e}")
                result = CommitResult(
                    source_row_number=record.source_row_number,
                    success=False,
                    error=str(e),
                    error_code="exception",
                )
            results.append(result)

        return results

    @abstractmethod
    def delete_record(self, entity_type: str, record_id: str) -> bool:
        """
        Delete a record from the target service.

        Args:
            entity_type: Entity type
            record_id: ID of the record to delete

        Returns:
            True if deleted successfully
        """
        pass

    def rollback(self, created: List[Tuple[str, str]]) -> Dict[str, int]:
        """
        Delete committed records, in the order given.

        Args:
            created: ``(entity_type, target_id)`` pairs, newest first

        Returns:
            Dictionary of entity type -> number of records deleted
        """
        deleted_counts: Dict[str, int] = {}
        for entity_type, record_id in created:
            try:
                if self.delete_record(entity_type, record_id):
                    deleted_counts[entity_type] = deleted_counts.get(entity_type, 0) + 1
            except Exception as e:
                logger.error(f"Failed to delete {entity_type} {record_id}: {e}")

        for entity_type, count in deleted_counts.items():
            logger.info(f"Rolled back {count} {entity_type} records")
        return deleted_counts

    def validate_connection(self) -> bool:
        """Validate the connection to the target service."""
        return True
