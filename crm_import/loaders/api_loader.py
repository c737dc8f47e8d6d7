"""REST loader for a target CRM API."""

import threading
import time
import logging
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import BaseLoader, TargetLookup
from ..exceptions import CommitError
from ..models.record import CommitResult, MappedRecord

logger = logging.getLogger(__name__)


class APILoader(BaseLoader, TargetLookup):
    """
    Commit sink and existence lookup over a REST API.

    Endpoints (relative to ``base_url``):
    - ``POST /{entity}/batch`` with ``{"records": [...]}``, answered with
      ``{"results": [{"success": ..., "id": ..., "error": ...}]}``
    - ``POST /{entity}`` when batch writes are disabled
    - ``GET /{entity}/{id}``, ``GET /{entity}?{field}={value}``, ``DELETE /{entity}/{id}``
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        target_service: str = "api",
        dry_run: bool = False,
        use_batch_endpoint: bool = True,
        rate_limit: float = 10.0,
        timeout: float = 30.0,
        endpoints: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the API loader.

        Args:
            base_url: Base URL for the API
            api_key: Bearer token
            target_service: Name of the target service
            dry_run: If True, simulate without making changes
            use_batch_endpoint: Commit a batch in one request
            rate_limit: Max requests per second (0 disables)
            timeout: Request timeout in seconds
            endpoints: Mapping of entity -> endpoint path
            session: Custom requests session
        """
        super().__init__(target_service, dry_run)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.use_batch_endpoint = use_batch_endpoint
        self.rate_limit = rate_limit
        self.timeout = timeout
        self.endpoints = endpoints or {}
        self._last_request_time = 0.0
        self._rate_lock = threading.Lock()
        self._session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a requests session with authentication and retry logic."""
        session = requests.Session()

        retries = Retry(
            total=3,
            backoff_factor=1.0,
            status_forcelist=[429, 500, 502, 503, 504],
        )
        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        if self.api_key:
            session.headers["Authorization"] = f"Bearer {self.api_key}"
        session.headers["Content-Type"] = "application/json"

        return session

    def _rate_limit_wait(self):
        """Wait to respect rate limits."""
        if self.rate_limit <= 0:
            return
        with self._rate_lock:
            elapsed = time.time() - self._last_request_time
            wait_time = (1.0 / self.rate_limit) - elapsed
            if wait_time > 0:
                time.sleep(wait_time)
            self._last_request_time = time.time()

    def _get_endpoint(self, entity_type: str) -> str:
        """Get the API endpoint for an entity type."""
        if entity_type in self.endpoints:
            return self.endpoints[entity_type]
        return f"/{entity_type}"

    def _url(self, entity_type: str, suffix: str = "") -> str:
        return f"{self.base_url}{self._get_endpoint(entity_type)}{suffix}"

    def _error_message(self, response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:200] or f"HTTP {response.status_code}"
        if isinstance(data, dict):
            return str(data.get("message") or data.get("error") or data)
        return str(data)

    def commit_record(self, entity_type: str, record: MappedRecord) -> CommitResult:
        """Create a single record."""
        if self.dry_run:
            return CommitResult(
                source_row_number=record.source_row_number,
                success=True,
                target_id=str(record.data.get("id") or f"dry-run-{record.source_row_number}"),
            )

        self._rate_limit_wait()
        response = self._session.post(self._url(entity_type), json=record.data, timeout=self.timeout)

        if response.status_code == 409:
            return CommitResult(
                source_row_number=record.source_row_number,
                success=False,
                error=f"Duplicate record: {self._error_message(response)}",
                error_code="409",
            )
        if response.status_code >= 400:
            return CommitResult(
                source_row_number=record.source_row_number,
                success=False,
                error=self._error_message(response),
                error_code=str(response.status_code),
            )

        response_data = response.json() if response.text else {}
        target_id = (
            response_data.get("id") or
            (response_data.get("data") or {}).get("id") or
            record.data.get("id")
        )
        return CommitResult(
            source_row_number=record.source_row_number,
            success=True,
            target_id=str(target_id) if target_id is not None else None,
        )

    def commit_batch(self, entity_type: str, records: List[MappedRecord]) -> List[CommitResult]:
        """
        Commit a batch through the batch endpoint.

        Raises:
            CommitError: if the request fails as a whole
        """
        if not self.use_batch_endpoint or self.dry_run:
            return super().commit_batch(entity_type, records)

        self._rate_limit_wait()
        try:
            response = self._session.post(
                self._url(entity_type, "/batch"),
                json={"records": [r.data for r in records]},
                timeout=self.timeout,
            )
            response.raise_for_status()
            items = response.json().get("results", [])
        except (requests.exceptions.RequestException, ValueError) as e:
            raise CommitError(f"Batch commit of {len(records)} {entity_type} records failed: {e}") from e

        results = []
        for index, record in enumerate(records):
            item = items[index] if index < len(items) else None
            if item is None:
                results.append(CommitResult(
                    source_row_number=record.source_row_number,
                    success=False,
                    error="No result returned for record",
                    error_code="missing_result",
                ))
            elif item.get("success", True) and item.get("id") is not None:
                results.append(CommitResult(
                    source_row_number=record.source_row_number,
                    success=True,
                    target_id=str(item["id"]),
                ))
            else:
                results.append(CommitResult(
                    source_row_number=record.source_row_number,
                    success=False,
                    error=item.get("error") or "Rejected by target",
                    error_code=str(item.get("code") or "rejected"),
                ))

        return results

    def delete_record(self, entity_type: str, record_id: str) -> bool:
        """Delete a record from the API."""
        if self.dry_run:
            return True

        self._rate_limit_wait()
        try:
            response = self._session.delete(self._url(entity_type, f"/{record_id}"), timeout=self.timeout)
            response.raise_for_status()
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to delete {entity_type} {record_id}: {e}")
            return False

    def exists(self, entity_type: str, record_id: str) -> bool:
        self._rate_limit_wait()
        response = self._session.get(self._url(entity_type, f"/{record_id}"), timeout=self.timeout)
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return True

    def find_by_natural_key(self, entity_type: str, field: str, value: str) -> Optional[str]:
        self._rate_limit_wait()
        response = self._session.get(self._url(entity_type), params={field: value}, timeout=self.timeout)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        payload: Any = response.json()
        items = payload.get("data", []) if isinstance(payload, dict) else payload
        for item in items or []:
            if str(item.get(field, "")).strip().lower() == str(value).strip().lower():
                return str(item.get("id"))
        return None

    def validate_connection(self) -> bool:
        """Validate connection to the API."""
        try:
            self._rate_limit_wait()
            response = self._session.get(self.base_url, timeout=self.timeout)
            return response.status_code < 500
        except requests.exceptions.RequestException as e:
            logger.error(f"API connection validation failed: {e}")
            return False
