"""Migration orchestration."""

from .orchestrator import MigrationOrchestrator, OrchestrationPhase

__all__ = ["MigrationOrchestrator", "OrchestrationPhase"]
