"""Request orchestration and step execution."""

from conductor.agents.executor import BatchResult, ProgressUpdate, StepExecutor
from conductor.agents.orchestrator import (
    Orchestrator,
    OrchestratorResponse,
    OrchestratorState,
    StreamEvent,
    ThreadContext,
    build_orchestrator,
    format_execution,
    format_tool_result,
    has_required_inputs,
)

__all__ = [
    "BatchResult",
    "Orchestrator",
    "OrchestratorResponse",
    "OrchestratorState",
    "ProgressUpdate",
    "StepExecutor",
    "StreamEvent",
    "ThreadContext",
    "build_orchestrator",
    "format_execution",
    "format_tool_result",
    "has_required_inputs",
]
