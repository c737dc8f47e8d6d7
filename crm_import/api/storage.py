"""In-memory session storage and the shared orchestrator behind the API."""

import os
import logging
import threading
from typing import Dict, List, Optional

from ..exceptions import NotFoundError
from ..loaders.api_loader import APILoader
from ..loaders.memory_loader import InMemoryLoader
from ..models.session import ImportSession, ImportSettings
from ..orchestrator import ImportOrchestrator
from ..services.audit import LoggingAuditSink
from ..services.error_resolution import ErrorWorkstation
from ..services.template_store import TemplateStore

logger = logging.getLogger(__name__)


def build_orchestrator(environ: Optional[Dict[str, str]] = None) -> ImportOrchestrator:
    """
    Build the orchestrator from ``CRM_IMPORT_*`` environment variables.

    ``CRM_IMPORT_TARGET_URL`` selects the REST target; without it records
    go to an in-memory store.
    """
    environ = os.environ if environ is None else environ
    target_url = environ.get("CRM_IMPORT_TARGET_URL")
    if target_url:
        loader = APILoader(base_url=target_url, api_key=environ.get("CRM_IMPORT_TARGET_API_KEY"))
    else:
        logger.warning("CRM_IMPORT_TARGET_URL not set, committing to an in-memory target")
        loader = InMemoryLoader()

    return ImportOrchestrator(
        loader=loader,
        template_store=TemplateStore(environ.get("CRM_IMPORT_TEMPLATES_DIR")),
        audit_sink=LoggingAuditSink(),
        settings=ImportSettings.from_env(environ),
    )


class SessionStorage:
    """Thread-safe session registry bound to one orchestrator."""

    def __init__(self, orchestrator: Optional[ImportOrchestrator] = None):
        self._sessions: Dict[str, ImportSession] = {}
        self._lock = threading.Lock()
        self._orchestrator = orchestrator
        self._workstation: Optional[ErrorWorkstation] = None

    @property
    def orchestrator(self) -> ImportOrchestrator:
        with self._lock:
            if self._orchestrator is None:
                self._orchestrator = build_orchestrator()
            return self._orchestrator

    @property
    def workstation(self) -> ErrorWorkstation:
        orchestrator = self.orchestrator
        with self._lock:
            if self._workstation is None or self._workstation.orchestrator is not orchestrator:
                self._workstation = ErrorWorkstation(orchestrator)
            return self._workstation

    def configure(self, orchestrator: ImportOrchestrator) -> None:
        """Swap the orchestrator and drop all sessions."""
        with self._lock:
            self._orchestrator = orchestrator
            self._workstation = None
            self._sessions.clear()

    def add(self, session: ImportSession) -> ImportSession:
        with self._lock:
            self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> ImportSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return session

    def list_all(self) -> List[ImportSession]:
        with self._lock:
            return sorted(self._sessions.values(), key=lambda s: s.created_at, reverse=True)

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None


session_storage = SessionStorage()
