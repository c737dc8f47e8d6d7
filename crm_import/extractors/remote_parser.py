"""Parser that delegates spreadsheet parsing to a remote service."""

import logging
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import BaseParser, looks_like_html
from ..exceptions import ParseError
from ..models.session import ImportSettings, UploadedFile

logger = logging.getLogger(__name__)


class RemoteFileParser(BaseParser):
    """
    Parser backed by a remote parsing endpoint.

    The service receives the file as multipart ``POST {base_url}/parse`` and
    answers ``{"headers": [...], "rows": [[...], ...]}`` (optionally wrapped
    in ``{"data": ...}``). A JSON answer with headers and no rows is a real
    empty file. Anything that is not JSON, such as an HTML error page from a
    proxy, raises ParseError carrying the raw body and status code.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        settings: Optional[ImportSettings] = None,
        mapping_engine=None,
        session: Optional[requests.Session] = None,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
    ):
        """
        Initialize the remote parser.

        Args:
            base_url: Base URL of the parsing service
            api_key: Bearer token for the service
            timeout: Request timeout in seconds
            settings: Import settings
            mapping_engine: Optional MappingEngine for suggested mappings
            session: Custom requests session
            max_retries: Retries on 429 and 5xx answers
            backoff_factor: Backoff between retries
        """
        super().__init__(settings, mapping_engine)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._max_retries = max_retries
        self._backoff_factor = backoff_factor
        self._session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a requests session with retry logic."""
        session = requests.Session()

        retries = Retry(
            total=self._max_retries,
            backoff_factor=self._backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=None,
            raise_on_status=False,
        )

        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        if self.api_key:
            session.headers["Authorization"] = f"Bearer {self.api_key}"

        return session

    def parse(
        self,
        content: bytes,
        file_name: str,
        declared_entity_type: Optional[str] = None,
    ) -> UploadedFile:
        """Send the file to the parsing service. See BaseParser.parse."""
        self.check_content(content, file_name)

        url = f"{self.base_url}/parse"
        data = {"entity_type": declared_entity_type} if declared_entity_type else {}
        try:
            response = self._session.post(
                url,
                files={"file": (file_name, content)},
                data=data,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise ParseError(f"Parsing service unreachable: {e}", file_name=file_name) from e

        payload = self._decode_response(response, file_name)
        if "data" in payload and isinstance(payload["data"], dict):
            payload = payload["data"]

        headers = payload.get("headers")
        if not isinstance(headers, list) or not headers:
            raise ParseError(
                "Parsing service returned no header row",
                file_name=file_name,
                raw_response=response.text[:10000],
                status_code=response.status_code,
            )

        rows = payload.get("rows") or []
        grid = [headers] + [self._row_cells(row, headers) for row in rows]
        logger.debug(f"Remote parse of {file_name} returned {len(rows)} rows")
        return self.build_file(file_name, len(content), grid, declared_entity_type)

    def _decode_response(self, response: requests.Response, file_name: str) -> Dict[str, Any]:
        """Decode the service answer, turning non-tabular content into ParseError."""
        body = response.text or ""
        content_type = response.headers.get("Content-Type", "")

        if looks_like_html(body) or "text/html" in content_type:
            raise ParseError(
                f"Parsing service returned an HTML page (HTTP {response.status_code}) instead of data",
                file_name=file_name,
                raw_response=body[:10000],
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ParseError(
                f"Parsing service returned a non-JSON answer (HTTP {response.status_code})",
                file_name=file_name,
                raw_response=body[:10000],
                status_code=response.status_code,
            ) from e

        if not isinstance(payload, dict):
            raise ParseError(
                "Parsing service returned an unexpected JSON structure",
                file_name=file_name,
                raw_response=body[:10000],
                status_code=response.status_code,
            )

        if response.status_code >= 400:
            message = payload.get("message") or payload.get("error") or f"HTTP {response.status_code}"
            raise ParseError(
                f"Parsing service error: {message}",
                file_name=file_name,
                raw_response=body[:10000],
                status_code=response.status_code,
            )

        return payload

    def _row_cells(self, row: Any, headers: list) -> list:
        """Accept rows as lists or as objects keyed by header."""
        if isinstance(row, dict):
            return [row.get(h) for h in headers]
        return list(row)
