"""Model provider contract.

A model provider turns a ModelRequest into a ModelResponse for one
vendor protocol.  Providers raise their native exceptions; the gateway
classifies them.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from conductor.gateway.types import ModelRequest, ModelResponse, StreamChunk


class ModelProvider(ABC):
    """Abstract text-generation provider."""

    name: str
    model: str

    @abstractmethod
    async def generate(self, request: ModelRequest) -> ModelResponse:
        """Run one non-streaming completion."""

    @abstractmethod
    def stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        """Run one streaming completion, yielding chunks as they arrive."""
