"""Local CSV and spreadsheet parser."""

import csv
import io
import logging
from pathlib import Path
from typing import Any, List, Optional

import pandas as pd

from .base import BaseParser, looks_like_html
from ..exceptions import ParseError
from ..models.session import UploadedFile

logger = logging.getLogger(__name__)

EXCEL_ENGINES = {
    ".xlsx": "openpyxl",
    ".xlsm": "openpyxl",
    ".xls": "xlrd",
}

SUPPORTED_EXTENSIONS = (".csv", ".txt", *EXCEL_ENGINES)


class FileParser(BaseParser):
    """
    Parser for CSV and Excel exports.

    Supports:
    - CSV with delimiter sniffing and UTF-8 (BOM tolerant) / latin-1 decoding
    - XLSX and XLS via pandas (first sheet, every cell read as text)
    - Rejection of empty, oversized and HTML payloads
    """

    def parse(
        self,
        content: bytes,
        file_name: str,
        declared_entity_type: Optional[str] = None,
    ) -> UploadedFile:
        """Parse one file. See BaseParser.parse."""
        self.check_content(content, file_name)

        extension = Path(file_name).suffix.lower()
        if extension in EXCEL_ENGINES:
            grid = self._read_excel(content, file_name, EXCEL_ENGINES[extension])
        elif extension in ("", ".csv", ".txt"):
            grid = self._read_csv(content, file_name)
        else:
            raise ParseError(
                f"Unsupported file type '{extension}'. Supported: {', '.join(SUPPORTED_EXTENSIONS)}",
                file_name=file_name,
            )

        return self.build_file(file_name, len(content), grid, declared_entity_type)

    def parse_path(self, path: str, declared_entity_type: Optional[str] = None) -> UploadedFile:
        """Parse a file from disk."""
        file_path = Path(path)
        try:
            content = file_path.read_bytes()
        except OSError as e:
            raise ParseError(f"Could not read file: {e}", file_name=file_path.name) from e
        return self.parse(content, file_path.name, declared_entity_type)

    def _decode(self, content: bytes, file_name: str) -> str:
        try:
            return content.decode("utf-8-sig")
        except UnicodeDecodeError:
            logger.warning(f"UTF-8 decode failed, trying latin-1 for {file_name}")
            return content.decode("latin-1")

    def _read_csv(self, content: bytes, file_name: str) -> List[List[str]]:
        """Read CSV text into a grid of cells."""
        text = self._decode(content, file_name)
        if not text.strip():
            raise ParseError("File is empty", file_name=file_name)
        if looks_like_html(text):
            raise ParseError(
                "Received an HTML page instead of tabular data",
                file_name=file_name,
                raw_response=text[:10000],
            )

        sample = text[:8192]
        try:
            dialect = csv.Sniffer().sniff(sample, delimiters=",;\t|")
            delimiter = dialect.delimiter
        except csv.Error:
            delimiter = ","

        try:
            reader = csv.reader(io.StringIO(text, newline=""), delimiter=delimiter)
            return [row for row in reader]
        except csv.Error as e:
            raise ParseError(f"Malformed CSV: {e}", file_name=file_name) from e

    def _read_excel(self, content: bytes, file_name: str, engine: str) -> List[List[Any]]:
        """Read the first sheet of a workbook into a grid of cells."""
        head = content[:512].decode("latin-1")
        if looks_like_html(head):
            raise ParseError(
                "Received an HTML page instead of a spreadsheet",
                file_name=file_name,
                raw_response=content[:10000].decode("utf-8", errors="replace"),
            )

        try:
            df = pd.read_excel(io.BytesIO(content), sheet_name=0, header=None, dtype=str, engine=engine)
        except Exception as e:
            raise ParseError(f"Could not read Excel file: {e}", file_name=file_name) from e

        df = df.where(pd.notna(df), None)
        return df.values.tolist()
