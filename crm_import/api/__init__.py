"""HTTP API over the import orchestrator."""
