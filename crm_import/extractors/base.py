"""Base parser interface and the shared tabular-to-UploadedFile conversion."""

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import re

from ..exceptions import ParseError
from ..models.schema import EntityType
from ..models.session import ImportSettings, SourceRow, UploadedFile

logger = logging.getLogger(__name__)

# Filename keyword -> entity type, checked in order
ENTITY_KEYWORDS: List[Tuple[Tuple[str, ...], EntityType]] = [
    (("client", "customer"), EntityType.CLIENTS),
    (("project",), EntityType.PROJECTS),
    (("task",), EntityType.TASKS),
    (("contact",), EntityType.CONTACTS),
    (("invoice",), EntityType.INVOICES),
    (("time",), EntityType.TIME_ENTRIES),
]

_HTML_START = re.compile(r"^\s*(<!doctype\s+html|<html|<head|<body)", re.IGNORECASE)

# Upload descriptor accepted by parse_many: (content, file_name, declared entity type)
FileUpload = Tuple[bytes, str, Optional[str]]


def detect_entity_type(file_name: str, declared: Optional[Any] = None) -> str:
    """
    Decide the entity type of an upload.

    A declared type always wins; otherwise the first filename keyword that
    matches decides, defaulting to clients.
    """
    if declared:
        return str(getattr(declared, "value", declared)).strip().lower()

    name = (file_name or "").lower()
    for keywords, entity_type in ENTITY_KEYWORDS:
        if any(keyword in name for keyword in keywords):
            return entity_type.value
    return EntityType.CLIENTS.value


def looks_like_html(text: str) -> bool:
    return bool(_HTML_START.match(text[:512]))


class BaseParser(ABC):
    """
    Base class for file parsers.

    Parsers turn raw upload bytes into an immutable UploadedFile: unique
    headers, padded rows tagged with their file position, a bounded preview
    and (when a mapping engine is attached) suggested mappings.
    """

    def __init__(self, settings: Optional[ImportSettings] = None, mapping_engine=None):
        """
        Initialize the parser.

        Args:
            settings: Import settings (preview size, size limit, worker bound)
            mapping_engine: Optional MappingEngine used to fill suggested mappings
        """
        self.settings = settings or ImportSettings()
        self.mapping_engine = mapping_engine

    @abstractmethod
    def parse(
        self,
        content: bytes,
        file_name: str,
        declared_entity_type: Optional[str] = None,
    ) -> UploadedFile:
        """
        Parse one file.

        Args:
            content: Raw file bytes
            file_name: Original file name (drives format and entity detection)
            declared_entity_type: Entity type hint from the operator

        Returns:
            UploadedFile

        Raises:
            ParseError: if the file has no usable header row or cannot be read
        """
        pass

    def parse_many(self, files: Sequence[FileUpload]) -> List[UploadedFile]:
        """
        Parse several uploads on a bounded worker pool.

        Results keep input order. A file that fails to parse comes back with
        ``parse_error`` set instead of aborting the others.
        """
        def parse_one(upload: FileUpload) -> UploadedFile:
            content, file_name, declared = upload
            try:
                return self.parse(content, file_name, declared)
            except ParseError as e:
                logger.error(f"Failed to parse {file_name}: {e.message}")
                return self.failed_file(content, file_name, declared, e)

        workers = max(1, min(self.settings.max_workers, len(files) or 1))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(parse_one, files))

    def failed_file(
        self,
        content: bytes,
        file_name: str,
        declared: Optional[str],
        error: ParseError,
    ) -> UploadedFile:
        """Descriptor for a file that could not be parsed."""
        return UploadedFile(
            file_name=file_name,
            original_file_name=file_name,
            file_size_bytes=len(content or b""),
            entity_type=detect_entity_type(file_name, declared),
            parse_error=error.to_dict(),
        )

    def check_content(self, content: bytes, file_name: str) -> None:
        """Reject empty and oversized payloads before decoding."""
        if not content:
            raise ParseError("File is empty", file_name=file_name)
        if len(content) > self.settings.max_file_size_bytes:
            raise ParseError(
                f"File exceeds maximum size of {self.settings.max_file_size_bytes} bytes",
                file_name=file_name,
            )

    def build_file(
        self,
        file_name: str,
        file_size_bytes: int,
        grid: Sequence[Sequence[Any]],
        declared_entity_type: Optional[str] = None,
    ) -> UploadedFile:
        """
        Build an UploadedFile from a grid whose first row is the header.

        Args:
            file_name: Original file name
            file_size_bytes: Size of the raw upload
            grid: Rows of cells, header first
            declared_entity_type: Entity type hint

        Returns:
            UploadedFile
        """
        if not grid or not any(self._cell(c) for c in grid[0]):
            raise ParseError("File has no header row", file_name=file_name)

        headers = self.normalize_headers([self._cell(c) for c in grid[0]])
        width = len(headers)
        rows: List[SourceRow] = []
        dropped_cells = 0

        for position, raw in enumerate(grid[1:], start=1):
            cells = [self._cell(c) for c in raw]
            if not any(c.strip() for c in cells):
                continue
            if len(cells) > width:
                if any(c.strip() for c in cells[width:]):
                    dropped_cells += 1
                cells = cells[:width]
            cells += [""] * (width - len(cells))
            rows.append(SourceRow(source_row_number=position, values=dict(zip(headers, cells))))

        if dropped_cells:
            logger.warning(f"{file_name}: dropped extra cells beyond the header on {dropped_cells} row(s)")

        entity_type = detect_entity_type(file_name, declared_entity_type)
        suggestions: Dict[str, int] = {}
        if self.mapping_engine is not None:
            suggestions = self.mapping_engine.suggest_mapping(headers, entity_type)

        logger.info(f"Parsed {file_name}: {len(headers)} columns, {len(rows)} rows as {entity_type}")
        return UploadedFile(
            file_name=file_name,
            original_file_name=file_name,
            file_size_bytes=file_size_bytes,
            entity_type=entity_type,
            headers=tuple(headers),
            total_records=len(rows),
            preview_rows=tuple(dict(r.values) for r in rows[:self.settings.preview_rows]),
            suggested_mappings=suggestions,
            rows=tuple(rows),
        )

    def normalize_headers(self, raw_headers: List[str]) -> List[str]:
        """Name blank headers ``Column N`` and suffix repeats with `` (2)``, `` (3)``."""
        headers: List[str] = []
        seen: Dict[str, int] = {}
        for index, raw in enumerate(raw_headers, start=1):
            header = raw.strip() or f"Column {index}"
            count = seen.get(header.lower(), 0) + 1
            seen[header.lower()] = count
            if count > 1:
                header = f"{header} ({count})"
            headers.append(header)
        return headers

    def _cell(self, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, float) and value != value:  # NaN
            return ""
        return str(value)
