from __future__ import annotations

from deepcite.agents.orchestrator import JobOrchestrator, build_orchestrator

_orchestrator: JobOrchestrator | None = None


def get_orchestrator() -> JobOrchestrator:
    """Process-wide orchestrator wired from settings."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator
