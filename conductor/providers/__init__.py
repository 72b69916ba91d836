"""Capability provider contract and registry."""

from conductor.providers.base import (
    CapabilityProvider,
    FunctionProvider,
    ToolCall,
    ToolResult,
    parse_tool_name,
    tool_call_from_dict,
)
from conductor.providers.registry import ProviderRegistry

__all__ = [
    "CapabilityProvider",
    "FunctionProvider",
    "ProviderRegistry",
    "ToolCall",
    "ToolResult",
    "parse_tool_name",
    "tool_call_from_dict",
]
