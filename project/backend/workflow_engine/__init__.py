"""
Workflow engine.

Resumable multi-step workflow orchestration over the job scheduler, the
timeline allocator and the external generation provider.
"""

from workflow_engine.orchestrator import WorkflowOrchestrator
from workflow_engine.steps import StepServices
from workflow_engine.worker import Engine, build_engine, serve, start_engine, stop_engine

__all__ = [
    "WorkflowOrchestrator",
    "StepServices",
    "Engine",
    "build_engine",
    "serve",
    "start_engine",
    "stop_engine",
]
