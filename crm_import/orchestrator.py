"""Import orchestrator - drives an import session from upload to completion."""

import json
import logging
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from .exceptions import (
    CommitError,
    DependencyOrderError,
    ImportCancelledError,
    MappingConflictError,
    MappingError,
    NotFoundError,
    ParseError,
    SessionStateError,
)
from .models.record import (
    CommitResult,
    ErrorType,
    FieldIssue,
    ImportError,
    MappedRecord,
    RecordOutcome,
    RecordStatus,
    RetryResult,
    ValidationResult,
)
from .models.schema import (
    DataType,
    EntityMappingSet,
    TransformationType,
    ValidationRule,
)
from .models.session import (
    AuditEvent,
    EntityProgress,
    ImportSession,
    ImportSettings,
    SessionStatus,
    SourceRow,
    UploadedFile,
)
from .services.audit import AuditSink, LoggingAuditSink
from .services.mapping_engine import MappingCheck, MappingEngine, find_source_id_column
from .services.schema_registry import SchemaRegistry
from .services.template_store import TemplateStore
from .services.transformer import TransformEngine
from .services.validator import RecordValidator, normalize_id
from .extractors.base import BaseParser, FileUpload
from .extractors.file_parser import FileParser
from .loaders.base import BaseLoader, TargetLookup
from .loaders.memory_loader import InMemoryLoader

logger = logging.getLogger(__name__)

# States in which mappings may be edited
EDITABLE_STATUSES = (SessionStatus.UPLOADING, SessionStatus.MAPPING, SessionStatus.VALIDATING)


class ImportOrchestrator:
    """
    Orchestrates import sessions.

    Handles:
    - Session creation and the session state machine
    - File intake (single and multiple uploads)
    - Mapping edits with version checks and template application
    - Validation passes per entity type
    - Commits in dependency order, batch by batch
    - Single-row retries used by the error workstation
    - Completion, cancellation, failure and rollback
    - Progress tracking and reporting
    """

    def __init__(
        self,
        registry: Optional[SchemaRegistry] = None,
        loader: Optional[BaseLoader] = None,
        lookup: Optional[TargetLookup] = None,
        template_store: Optional[TemplateStore] = None,
        audit_sink: Optional[AuditSink] = None,
        parser: Optional[BaseParser] = None,
        settings: Optional[ImportSettings] = None,
        transform_engine: Optional[TransformEngine] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            registry: Target schema registry
            loader: Commit sink (an InMemoryLoader when omitted)
            lookup: Existence lookup; defaults to the loader when it is one
            template_store: Store of mapping templates
            audit_sink: Receiver of transitions and skip decisions
            parser: File parser; when omitted a FileParser is built per
                session so session settings (preview size, size limit) apply
            settings: Default settings for new sessions
            transform_engine: Transformation library (custom transforms)
        """
        self.registry = registry or SchemaRegistry()
        self.loader = loader if loader is not None else InMemoryLoader()
        if lookup is None and isinstance(self.loader, TargetLookup):
            lookup = self.loader
        self.lookup = lookup
        self.template_store = template_store or TemplateStore()
        self.audit_sink = audit_sink or LoggingAuditSink()
        self.parser = parser
        self.settings = settings or ImportSettings()
        self.transform_engine = transform_engine or TransformEngine()
        self.mapping_engine = MappingEngine(self.registry)
        self.validator = RecordValidator(self.registry, self.transform_engine)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def create_session(
        self,
        firm_id: str,
        entity_types: Optional[Sequence[str]] = None,
        settings: Optional[Union[ImportSettings, Dict[str, Any]]] = None,
    ) -> ImportSession:
        """
        Create a new import session.

        Args:
            firm_id: Firm the data is imported for
            entity_types: Entity types the operator plans to import
            settings: ImportSettings, or overrides of the default settings

        Returns:
            ImportSession in the Created state
        """
        if isinstance(settings, ImportSettings):
            session_settings = settings
        else:
            session_settings = self.settings.merged(settings)

        session = ImportSession(
            firm_id=firm_id,
            entity_types=[self.registry.resolve_entity_type(e) for e in entity_types or []],
            settings=session_settings,
        )
        self._audit(session, "created", {"firm_id": firm_id, "entity_types": session.entity_types})
        logger.info(f"Created import session {session.session_id} for firm {firm_id}")
        return session

    def _audit(self, session: ImportSession, event_type: str, details: Optional[Dict[str, Any]] = None) -> AuditEvent:
        event = AuditEvent(session_id=session.session_id, event_type=event_type, details=details or {})
        session.audit_trail.append(event)
        self.audit_sink.emit(event)
        return event

    def audit(self, session: ImportSession, event_type: str, details: Optional[Dict[str, Any]] = None) -> AuditEvent:
        """Record an operator decision against the session."""
        with session.lock:
            return self._audit(session, event_type, details)

    def _transition(self, session: ImportSession, target: SessionStatus, details: Optional[Dict[str, Any]] = None):
        """Move the session to ``target``; a no-op when already there."""
        if session.status == target:
            return
        if not session.can_transition(target):
            raise SessionStateError(
                f"Session {session.session_id} cannot move from {session.status.value} to {target.value}"
            )
        previous = session.status
        session.status = target
        session.current_step = target.value
        if target == SessionStatus.IMPORTING and session.started_at is None:
            session.started_at = datetime.utcnow()
        if session.is_terminal:
            session.completed_at = datetime.utcnow()

        payload = {"from": previous.value, "to": target.value}
        payload.update(details or {})
        self._audit(session, "transition", payload)
        logger.info(f"Session {session.session_id}: {previous.value} -> {target.value}")

    def _require_status(self, session: ImportSession, allowed: Sequence[SessionStatus], action: str):
        if session.status not in allowed:
            raise SessionStateError(
                f"Cannot {action} while session {session.session_id} is {session.status.value}"
            )

    def _entity(self, session: ImportSession, entity_type: Any) -> str:
        """Resolve an entity type that has a parsed file in the session."""
        entity_type = self.registry.resolve_entity_type(entity_type)
        if entity_type not in session.files:
            raise NotFoundError(f"No file uploaded for {entity_type} in session {session.session_id}")
        return entity_type

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def _parser_for(self, session: ImportSession) -> BaseParser:
        if self.parser is not None:
            return self.parser
        return FileParser(session.settings, self.mapping_engine)

    def _begin_upload(self, session: ImportSession) -> None:
        with session.lock:
            self._require_status(
                session,
                (SessionStatus.CREATED, SessionStatus.UPLOADING, SessionStatus.MAPPING),
                "upload files",
            )
            self._transition(session, SessionStatus.UPLOADING)

    def _finish_upload(self, session: ImportSession) -> None:
        if session.files and session.status == SessionStatus.UPLOADING:
            self._transition(session, SessionStatus.MAPPING)

    def upload_file(
        self,
        session: ImportSession,
        content: bytes,
        file_name: str,
        entity_type: Optional[str] = None,
    ) -> UploadedFile:
        """
        Parse one upload and attach it to the session.

        A file of an entity type already in the session replaces the old
        file together with its mappings, validation results and errors.

        Raises:
            ParseError: the file has no usable header row or cannot be read
            SessionStateError: uploads are not accepted in the current state
        """
        if entity_type:
            entity_type = self.registry.resolve_entity_type(entity_type)
        self._begin_upload(session)
        try:
            uploaded = self._parser_for(session).parse(content, file_name, entity_type)
        except ParseError:
            with session.lock:
                self._finish_upload(session)
            raise

        with session.lock:
            self._store_file(session, uploaded)
            self._finish_upload(session)
        return uploaded

    def upload_files(self, session: ImportSession, files: Sequence[FileUpload]) -> List[UploadedFile]:
        """
        Parse several uploads in parallel.

        Files that fail to parse come back with ``parse_error`` set and are
        not attached; the others are attached in input order.
        """
        self._begin_upload(session)
        uploaded = self._parser_for(session).parse_many(files)

        with session.lock:
            for item in uploaded:
                if item.is_parsed:
                    self._store_file(session, item)
            self._finish_upload(session)
        return uploaded

    def _store_file(self, session: ImportSession, uploaded: UploadedFile) -> None:
        entity_type = self.registry.resolve_entity_type(uploaded.entity_type)
        if session.has_committed(entity_type):
            raise SessionStateError(
                f"{entity_type} already has committed records in session {session.session_id}"
            )

        previous = session.mappings.get(entity_type)
        mapping_set = self.mapping_engine.build_mapping_set(
            entity_type, list(uploaded.headers), uploaded.suggested_mappings
        )
        if previous is not None:
            logger.warning(f"Replacing {entity_type} file {session.files[entity_type].file_name} with {uploaded.file_name}")
            mapping_set = replace(mapping_set, version=previous.version + 1)

        session.files[entity_type] = uploaded
        session.mappings[entity_type] = mapping_set
        self._discard_results(session, entity_type)
        if entity_type not in session.entity_types:
            session.entity_types.append(entity_type)

        self._audit(session, "file_uploaded", {
            "entity_type": entity_type,
            "file_name": uploaded.file_name,
            "total_records": uploaded.total_records,
        })

    def remove_file(self, session: ImportSession, entity_type: str) -> None:
        """Detach an entity type's file with its mappings, results and errors."""
        with session.lock:
            entity_type = self._entity(session, entity_type)
            self._require_status(session, EDITABLE_STATUSES, "remove files")
            if session.has_committed(entity_type):
                raise SessionStateError(f"{entity_type} already has committed records")

            if session.status == SessionStatus.VALIDATING:
                self._transition(session, SessionStatus.MAPPING)
            del session.files[entity_type]
            del session.mappings[entity_type]
            self._discard_results(session, entity_type)
            if not session.files and session.status == SessionStatus.MAPPING:
                self._transition(session, SessionStatus.UPLOADING)
            self._audit(session, "file_removed", {"entity_type": entity_type})

    def _discard_results(self, session: ImportSession, entity_type: str) -> None:
        session.validation_results.pop(entity_type, None)
        for error_id in [e.id for e in session.errors.values() if e.entity_type == entity_type]:
            del session.errors[error_id]

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def get_mappings(self, session: ImportSession, entity_type: str) -> EntityMappingSet:
        with session.lock:
            return session.mappings[self._entity(session, entity_type)]

    def _begin_mapping_edit(
        self,
        session: ImportSession,
        entity_type: str,
        expected_version: Optional[int],
    ) -> EntityMappingSet:
        self._require_status(session, EDITABLE_STATUSES, "edit mappings")
        current = session.mappings[entity_type]
        if expected_version is not None and expected_version != current.version:
            raise MappingConflictError(entity_type, expected_version, current.version)
        return current

    def _commit_mapping_edit(self, session: ImportSession, entity_type: str, updated: EntityMappingSet) -> None:
        if session.status == SessionStatus.VALIDATING:
            self._transition(session, SessionStatus.MAPPING, {"reason": f"{entity_type} mapping edited"})
        session.mappings[entity_type] = updated
        self._discard_results(session, entity_type)

    def set_mapping(
        self,
        session: ImportSession,
        entity_type: str,
        target_field: str,
        source_field: Optional[str],
        data_type: Optional[DataType] = None,
        transformation: Optional[TransformationType] = None,
        validation_rules: Optional[List[ValidationRule]] = None,
        default_value: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> EntityMappingSet:
        """
        Bind one target field of an entity type to a source column.

        Args:
            expected_version: Mapping version the caller read; the write is
                rejected when the live version differs

        Raises:
            MappingConflictError: the mapping changed since it was read
            MappingError: unknown target field or source column
            SessionStateError: mappings are locked in the current state
        """
        with session.lock:
            entity_type = self._entity(session, entity_type)
            current = self._begin_mapping_edit(session, entity_type, expected_version)
            updated = self.mapping_engine.set_mapping(
                current,
                target_field,
                source_field,
                data_type=data_type,
                transformation=transformation,
                validation_rules=validation_rules,
                headers=session.files[entity_type].headers,
                default_value=default_value,
            )
            self._commit_mapping_edit(session, entity_type, updated)
            return updated

    def apply_template(
        self,
        session: ImportSession,
        entity_type: str,
        template_name: str,
        expected_version: Optional[int] = None,
    ) -> EntityMappingSet:
        """
        Apply a stored template to an entity type's mappings.

        Matched template entries replace the current binding of their target;
        every other target keeps its current binding.
        """
        with session.lock:
            entity_type = self._entity(session, entity_type)
            template = self.template_store.get(entity_type, template_name)
            if template is None:
                raise NotFoundError(f"Template not found: {entity_type}/{template_name}")

            current = self._begin_mapping_edit(session, entity_type, expected_version)
            seeded = self.mapping_engine.apply_template(template, session.files[entity_type].headers)
            updated = self.mapping_engine.merge_template(current, seeded)
            self._commit_mapping_edit(session, entity_type, updated)
            return updated

    def check_mappings(self, session: ImportSession, entity_type: str) -> MappingCheck:
        with session.lock:
            entity_type = self._entity(session, entity_type)
            return self.mapping_engine.check_mappings(
                session.mappings[entity_type], session.files[entity_type].headers
            )

    # ------------------------------------------------------------------
    # Preview and validation
    # ------------------------------------------------------------------

    def preview(self, session: ImportSession, entity_type: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Post-transform preview of the first rows with their issues.

        Returns:
            List of ``{source_row_number, source, mapped, issues}`` in row order
        """
        with session.lock:
            entity_type = self._entity(session, entity_type)
            rows = session.files[entity_type].rows
            mapping_set = session.mappings[entity_type]
            crosswalk = {k: dict(v) for k, v in session.id_crosswalk.items()}
            settings = session.settings

        limit = settings.preview_rows if limit is None else limit
        duplicates = self.mapping_engine.find_duplicate_sources(mapping_set)
        preview = []
        for row in rows[:max(0, limit)]:
            outcome = self.validator.evaluate_row(
                entity_type, mapping_set, row, self.lookup, settings, crosswalk, duplicates
            )
            preview.append({
                "source_row_number": row.source_row_number,
                "source": dict(row.values),
                "mapped": outcome.values,
                "issues": [i.to_dict() for i in outcome.issues],
            })
        return preview

    def validate(
        self,
        session: ImportSession,
        entity_types: Optional[Sequence[str]] = None,
    ) -> Dict[str, ValidationResult]:
        """
        Run a validation pass over the pending rows of each entity type.

        Rows already committed or skipped are left out. The previous results
        and errors of a validated entity type are replaced, never merged. A
        result whose mapping changed while the pass ran is discarded.

        Args:
            session: Session to validate
            entity_types: Entity types to validate (all uploaded ones when omitted)

        Returns:
            Dictionary of entity type -> ValidationResult for the results kept

        Raises:
            ImportCancelledError: the session was cancelled during the pass
        """
        with session.lock:
            self._require_status(
                session,
                (SessionStatus.MAPPING, SessionStatus.VALIDATING, SessionStatus.IMPORTING),
                "validate",
            )
            if entity_types is None:
                wanted = list(session.files)
            else:
                wanted = [self._entity(session, e) for e in entity_types]
            ordered = self.registry.commit_order(wanted)
            self._transition(session, SessionStatus.VALIDATING)

        results: Dict[str, ValidationResult] = {}
        for entity_type in ordered:
            with session.lock:
                if session.is_terminal:
                    raise ImportCancelledError(f"Session {session.session_id} is {session.status.value}")
                file = session.files[entity_type]
                mapping_set = session.mappings[entity_type]
                handled = session.handled_rows(entity_type)
                crosswalk = {k: dict(v) for k, v in session.id_crosswalk.items()}
                settings = session.settings

            rows = [r for r in file.rows if r.source_row_number not in handled]
            result = self.validator.validate(
                entity_type,
                mapping_set,
                rows,
                lookup=self.lookup,
                settings=settings,
                crosswalk=crosswalk,
                cancel_event=session.cancel_event,
                source_id_column=find_source_id_column(file.headers, entity_type),
            )

            with session.lock:
                if session.is_terminal:
                    raise ImportCancelledError(f"Session {session.session_id} is {session.status.value}")
                live = session.mappings.get(entity_type)
                if live is None or live.version != mapping_set.version:
                    logger.warning(
                        f"Discarding {entity_type} validation result: mapping changed during the pass"
                    )
                    continue
                self._discard_results(session, entity_type)
                session.validation_results[entity_type] = result
                for error in result.errors:
                    session.errors[error.id] = error
                results[entity_type] = result

        return results

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _check_dependencies(self, session: ImportSession, entity_type: str) -> None:
        for dependency in self.registry.dependencies(entity_type):
            if dependency in session.files and not session.has_committed(dependency):
                raise DependencyOrderError(
                    f"Cannot commit {entity_type} before {dependency}: "
                    f"{dependency} has no committed batch in this session"
                )

    def _batches(self, records: List[MappedRecord], batch_size: int) -> Iterator[List[MappedRecord]]:
        """Iterate over records in batches."""
        for i in range(0, len(records), batch_size):
            yield records[i:i + batch_size]

    def commit(self, session: ImportSession, entity_type: str) -> List[CommitResult]:
        """
        Commit the pending valid records of one entity type.

        Records go to the loader in ``batch_size`` batches, in source row
        order. A batch is written completely or not at all; cancellation is
        honored between batches. Earlier batches stay committed when a later
        one fails.

        Returns:
            One CommitResult per record submitted

        Raises:
            DependencyOrderError: a referenced entity type has not committed yet
            ImportCancelledError: the session was cancelled between batches
            CommitError: the loader failed a batch; the session is Failed
        """
        with session.lock:
            self._require_status(session, (SessionStatus.VALIDATING, SessionStatus.IMPORTING), "commit")
            entity_type = self._entity(session, entity_type)
            result = session.validation_results.get(entity_type)
            if result is None:
                raise SessionStateError(f"{entity_type} has not been validated")
            self._check_dependencies(session, entity_type)
            self._transition(session, SessionStatus.IMPORTING)

            session.committed_rows.setdefault(entity_type, {})
            pending = list(result.valid_records)
            results: List[CommitResult] = []
            batch_size = max(1, session.settings.batch_size)

            for index, batch in enumerate(self._batches(pending, batch_size)):
                if session.is_cancelled:
                    raise ImportCancelledError(
                        f"Commit of {entity_type} cancelled after {index * batch_size} of {len(pending)} records"
                    )
                results.extend(self._commit_records(session, entity_type, batch))

            logger.info(
                f"Committed {sum(1 for r in results if r.success)}/{len(pending)} {entity_type} records"
            )

            if session.settings.auto_retry_references:
                self._recheck_references(session, entity_type)

        return results

    def _prepare_record(self, session: ImportSession, record: MappedRecord) -> MappedRecord:
        """Rewrite foreign keys through the session crosswalk; keep source ids when asked."""
        data = dict(record.data)
        for field_name, target_kind in self.registry.reference_fields(record.entity_type).items():
            value = data.get(field_name)
            if value is None:
                continue
            target_id = session.id_crosswalk.get(target_kind, {}).get(normalize_id(value))
            if target_id is None:
                continue
            if isinstance(value, int) and target_id.isdigit():
                data[field_name] = int(target_id)
            else:
                data[field_name] = target_id

        if session.settings.preserve_ids and record.source_id:
            data["id"] = record.source_id
        return replace(record, data=data)

    def _commit_records(
        self,
        session: ImportSession,
        entity_type: str,
        records: List[MappedRecord],
        error_ids: Optional[Dict[int, ImportError]] = None,
    ) -> List[CommitResult]:
        """
        Send one batch to the loader and record the outcome. Caller holds the lock.

        Args:
            error_ids: Errors being retried, by source row number; a failed
                commit replaces them instead of queueing new errors
        """
        prepared = [self._prepare_record(session, r) for r in records]
        try:
            results = self.loader.commit_batch(entity_type, prepared)
        except CommitError as e:
            self._fail(session, str(e))
            raise

        committed = session.committed_rows.setdefault(entity_type, {})
        crosswalk = session.id_crosswalk.setdefault(entity_type, {})
        done_rows = set()

        for record, commit_result in zip(records, results):
            done_rows.add(record.source_row_number)
            if commit_result.success:
                committed[record.source_row_number] = commit_result.target_id
                session.commit_log.append((entity_type, commit_result.target_id))
                if record.source_id:
                    crosswalk[record.source_id] = commit_result.target_id
                continue
            previous = (error_ids or {}).get(record.source_row_number)
            error = self._commit_failure(entity_type, record, commit_result, previous)
            session.errors[error.id] = error

        result = session.validation_results.get(entity_type)
        if result is not None:
            result.valid_records = [r for r in result.valid_records if r.source_row_number not in done_rows]
        return results

    def _commit_failure(
        self,
        entity_type: str,
        record: MappedRecord,
        commit_result: CommitResult,
        previous: Optional[ImportError] = None,
    ) -> ImportError:
        """Turn a per-record sink failure into a queued error."""
        error_type = ErrorType.DUPLICATE if commit_result.error_code == "409" else ErrorType.SYSTEM
        issue = FieldIssue(
            error_type=error_type,
            message=f"Commit failed: {commit_result.error}",
            suggested_fix="skip or update existing" if error_type == ErrorType.DUPLICATE else "Retry the record",
        )
        error = ImportError.from_issues(entity_type, record.source_row_number, record.source_data, [issue])
        if previous is not None:
            self._carry_over(previous, error)
        logger.error(f"Commit of {entity_type} row {record.source_row_number} failed: {commit_result.error}")
        return error

    def _carry_over(self, previous: ImportError, error: ImportError) -> None:
        """Give a replacement error the identity and history of the one it replaces."""
        error.id = previous.id
        error.created_at = previous.created_at
        error.applied_fixes = dict(previous.applied_fixes)
        error.reviewed = previous.reviewed
        error.attempts = previous.attempts + 1

    def _recheck_references(self, session: ImportSession, committed_entity: str) -> None:
        """Retry reference errors that point at an entity type that just committed."""
        candidates = [
            e.id for e in session.errors.values()
            if e.error_type == ErrorType.REFERENCE
            and committed_entity in self.registry.dependencies(e.entity_type)
        ]
        healed = 0
        for error_id in candidates:
            if self._retry(session, error_id, None).success:
                healed += 1
        if candidates:
            logger.info(f"Re-checked {len(candidates)} reference errors after {committed_entity} commit: {healed} resolved")

    def execute(self, session: ImportSession) -> Dict[str, List[CommitResult]]:
        """Validate and commit every uploaded entity type in dependency order."""
        with session.lock:
            ordered = self.registry.commit_order(list(session.files))

        results: Dict[str, List[CommitResult]] = {}
        for entity_type in ordered:
            validated = self.validate(session, [entity_type])
            if entity_type not in validated:
                raise SessionStateError(f"Validation result for {entity_type} was discarded")
            results[entity_type] = self.commit(session, entity_type)
        return results

    # ------------------------------------------------------------------
    # Single-row retry (used by the error workstation)
    # ------------------------------------------------------------------

    def get_error(self, session: ImportSession, error_id: str) -> ImportError:
        with session.lock:
            error = session.errors.get(error_id)
            if error is None:
                raise NotFoundError(f"Error not found: {error_id}")
            return error

    def translate_fixes(self, session: ImportSession, entity_type: str, fixed_fields: Dict[str, Any]) -> Dict[str, str]:
        """Key overrides by source header; target field names go through the mapping."""
        mapping_set = session.mappings.get(entity_type)
        headers = session.files[entity_type].headers if entity_type in session.files else ()
        translated: Dict[str, str] = {}
        for key, value in (fixed_fields or {}).items():
            if key in headers:
                translated[key] = "" if value is None else str(value)
                continue
            source = mapping_set.source_for(key) if mapping_set else None
            if source is None:
                raise MappingError(f"'{key}' is neither a source column nor a mapped {entity_type} field")
            translated[source] = "" if value is None else str(value)
        return translated

    def retry_error(
        self,
        session: ImportSession,
        error_id: str,
        fixed_fields: Optional[Dict[str, Any]] = None,
    ) -> RetryResult:
        """
        Re-validate one error row with operator overrides layered on its source data.

        On success the error is removed and the record is committed (when its
        entity type has already committed) or joins the pending valid records.
        On failure the error is replaced under the same id.
        """
        with session.lock:
            if session.is_terminal:
                raise SessionStateError(f"Session {session.session_id} is {session.status.value}")
            return self._retry(session, error_id, fixed_fields)

    def _retry(self, session: ImportSession, error_id: str, fixed_fields: Optional[Dict[str, Any]]) -> RetryResult:
        error = session.errors.get(error_id)
        if error is None:
            raise NotFoundError(f"Error not found: {error_id}")
        entity_type = error.entity_type
        if entity_type not in session.mappings:
            raise SessionStateError(f"{entity_type} file is no longer in the session")

        overrides = dict(error.applied_fixes)
        overrides.update(self.translate_fixes(session, entity_type, fixed_fields or {}))
        row_data = error.effective_data()
        row_data.update(overrides)

        pending = session.validation_results.get(entity_type)
        record, issues = self.validator.validate_row(
            entity_type,
            session.mappings[entity_type],
            SourceRow(source_row_number=error.source_row_number, values=row_data),
            lookup=self.lookup,
            settings=session.settings,
            crosswalk=session.id_crosswalk,
            source_id_column=find_source_id_column(session.files[entity_type].headers, entity_type),
            seen_keys=self._pending_keys(entity_type, pending.valid_records if pending else []),
        )

        if issues:
            replacement = ImportError.from_issues(entity_type, error.source_row_number, error.source_data, issues)
            self._carry_over(error, replacement)
            replacement.applied_fixes = overrides
            session.errors[error_id] = replacement
            return RetryResult(error_id=error_id, success=False, error=replacement)

        del session.errors[error_id]
        record = replace(record, source_data=dict(error.source_data))

        if not session.has_committed(entity_type):
            if pending is None:
                pending = ValidationResult(entity_type=entity_type, mapping_version=session.mappings[entity_type].version)
                session.validation_results[entity_type] = pending
            pending.valid_records.append(record)
            pending.valid_records.sort(key=lambda r: r.source_row_number)
            return RetryResult(error_id=error_id, success=True)

        if session.status == SessionStatus.VALIDATING:
            self._transition(session, SessionStatus.IMPORTING)
        self._require_status(session, (SessionStatus.IMPORTING,), "commit a retried record")
        error.applied_fixes = overrides
        commit_result = self._commit_records(
            session, entity_type, [record], {error.source_row_number: error}
        )[0]
        if not commit_result.success:
            return RetryResult(error_id=error_id, success=False, error=session.errors.get(error_id))
        return RetryResult(
            error_id=error_id,
            success=True,
            target_id=commit_result.target_id,
            committed=True,
        )

    def _pending_keys(self, entity_type: str, records: List[MappedRecord]) -> Dict[Tuple[str, str], int]:
        """Natural keys claimed by records that passed validation but are not committed yet."""
        keys: Dict[Tuple[str, str], int] = {}
        for record in records:
            for key_field in self.registry.natural_keys(entity_type):
                value = record.data.get(key_field)
                if value not in (None, ""):
                    keys.setdefault((key_field, str(value).strip().lower()), record.source_row_number)
        return keys

    # ------------------------------------------------------------------
    # Completion, cancellation, failure, rollback
    # ------------------------------------------------------------------

    def complete(self, session: ImportSession) -> ImportSession:
        """
        Finish the session.

        Raises:
            SessionStateError: errors are still queued (blocking ones must be
                fixed, skippable ones fixed or skipped), or validated records
                were never committed
        """
        with session.lock:
            self._require_status(session, (SessionStatus.IMPORTING,), "complete")
            if session.errors:
                blocking = sum(1 for e in session.errors.values() if e.is_blocking)
                skippable = len(session.errors) - blocking
                raise SessionStateError(
                    f"Cannot complete session {session.session_id}: {blocking} blocking and "
                    f"{skippable} skippable errors outstanding"
                )
            uncommitted = {
                entity: len(result.valid_records)
                for entity, result in session.validation_results.items()
                if result.valid_records
            }
            if uncommitted:
                raise SessionStateError(f"Cannot complete session: uncommitted records {uncommitted}")
            self._transition(session, SessionStatus.COMPLETED)
        return session

    def cancel(self, session: ImportSession) -> ImportSession:
        """Cancel the session. In-flight passes stop at their next batch boundary."""
        if not session.can_transition(SessionStatus.CANCELLED):
            raise SessionStateError(f"Cannot cancel session {session.session_id} in state {session.status.value}")
        session.cancel_event.set()
        with session.lock:
            self._transition(session, SessionStatus.CANCELLED)
        return session

    def _fail(self, session: ImportSession, reason: str) -> None:
        session.failure_reason = reason
        self._transition(session, SessionStatus.FAILED, {"reason": reason})
        logger.error(f"Session {session.session_id} failed: {reason}")

    def fail(self, session: ImportSession, reason: str) -> ImportSession:
        with session.lock:
            self._fail(session, reason)
        return session

    def rollback(self, session: ImportSession, reason: Optional[str] = None) -> Dict[str, int]:
        """
        Delete every record this session committed, newest first.

        Returns:
            Dictionary of entity type -> number of records deleted
        """
        with session.lock:
            if not session.can_transition(SessionStatus.ROLLED_BACK):
                raise SessionStateError(
                    f"Cannot roll back session {session.session_id} in state {session.status.value}"
                )
            session.cancel_event.set()
            deleted = self.loader.rollback(list(reversed(session.commit_log)))

            session.commit_log = []
            self._transition(session, SessionStatus.ROLLED_BACK, {"reason": reason, "deleted": deleted})
            logger.info(f"Rolled back session {session.session_id}: {deleted}")
            return deleted

    # ------------------------------------------------------------------
    # Progress and reporting
    # ------------------------------------------------------------------

    def get_progress(self, session: ImportSession) -> Dict[str, Any]:
        """Totals and per-entity counters."""
        with session.lock:
            entities = []
            for entity_type in self.registry.commit_order(list(session.files)):
                progress = EntityProgress(
                    entity_type=entity_type,
                    total=session.files[entity_type].total_records,
                    successful=len(session.committed_rows.get(entity_type, {})),
                    failed=len(session.errors_for(entity_type)),
                    skipped=len(session.skipped_rows.get(entity_type, set())),
                )
                progress.processed = progress.successful + progress.failed + progress.skipped
                if session.has_committed(entity_type):
                    progress.status = "committed"
                elif entity_type in session.validation_results:
                    progress.status = "validated"
                else:
                    progress.status = "mapping"
                entities.append(progress)

            total = sum(p.total for p in entities)
            processed = sum(p.processed for p in entities)
            return {
                "session_id": session.session_id,
                "status": session.status.value,
                "current_step": session.current_step,
                "total_records": total,
                "processed_records": processed,
                "successful_records": sum(p.successful for p in entities),
                "failed_records": sum(p.failed for p in entities),
                "skipped_records": sum(p.skipped for p in entities),
                "percentage": round(100.0 * processed / total, 1) if total else 0.0,
                "entities": [p.to_dict() for p in entities],
            }

    def list_records(
        self,
        session: ImportSession,
        entity_type: Optional[str] = None,
        status: Optional[Union[RecordStatus, str]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """
        Page through per-row outcomes, in commit order then source row order.

        Every parsed row is ``success`` (with the target id it was committed
        under), ``skipped``, ``failed`` (an error is queued for it) or
        ``pending``.

        Returns:
            Dictionary with ``total`` (every match), ``limit``, ``offset`` and
            the ``records`` page
        """
        wanted = RecordStatus(status) if status is not None else None
        with session.lock:
            if entity_type is not None:
                entity_types = [self._entity(session, entity_type)]
            else:
                entity_types = self.registry.commit_order(list(session.files))

            outcomes: List[RecordOutcome] = []
            for entity in entity_types:
                committed = session.committed_rows.get(entity, {})
                skipped = session.skipped_rows.get(entity, set())
                errors = {e.source_row_number: e for e in session.errors_for(entity)}
                for row in session.files[entity].rows:
                    outcome = RecordOutcome(entity_type=entity, source_row_number=row.source_row_number)
                    if row.source_row_number in committed:
                        outcome.status = RecordStatus.SUCCESS
                        outcome.target_id = committed[row.source_row_number]
                    elif row.source_row_number in skipped:
                        outcome.status = RecordStatus.SKIPPED
                    elif row.source_row_number in errors:
                        error = errors[row.source_row_number]
                        outcome.status = RecordStatus.FAILED
                        outcome.error_id = error.id
                        outcome.error_type = error.error_type
                        outcome.error_message = error.error_message
                    if wanted is None or outcome.status == wanted:
                        outcomes.append(outcome)

        start = max(0, offset)
        page = outcomes[start:start + max(0, limit)]
        return {
            "total": len(outcomes),
            "limit": limit,
            "offset": offset,
            "records": [o.to_dict() for o in page],
        }

    def build_report(self, session: ImportSession) -> Dict[str, Any]:
        """Full JSON-serializable report of the session."""
        with session.lock:
            report = session.to_dict()
            report["progress"] = self.get_progress(session)
            report["errors"] = [
                e.to_dict()
                for entity in self.registry.commit_order(list(session.files))
                for e in session.errors_for(entity)
            ]
            report["audit_trail"] = [e.to_dict() for e in session.audit_trail]
            report["generated_at"] = datetime.utcnow().isoformat()
            return report

    def save_report(self, session: ImportSession, directory: str) -> str:
        """Save the session report as JSON and return its path."""
        path = Path(directory)
        path.mkdir(parents=True, exist_ok=True)
        filepath = path / f"import_report_{session.session_id}_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}.json"
        with open(filepath, 'w') as f:
            json.dump(self.build_report(session), f, indent=2, default=str)
        logger.info(f"Saved import report to {filepath}")
        return str(filepath)
