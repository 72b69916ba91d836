"""Model gateway: resilient access to text-generation providers."""

import logging
from dataclasses import replace

from conductor.core.config import Settings
from conductor.core.resilience import DEFAULT_RETRY_POLICY, CircuitBreakerRegistry
from conductor.gateway.base import ModelProvider
from conductor.gateway.errors import classify_failure, parse_retry_after
from conductor.gateway.gateway import ModelGateway, ModelStream, extract_json
from conductor.gateway.types import ModelRequest, ModelResponse, ModelToolCall, StreamChunk

logger = logging.getLogger(__name__)


def build_gateway(settings: Settings, breakers: CircuitBreakerRegistry) -> ModelGateway:
    """Construct the gateway from settings.

    The configured provider comes first; when it is LiteLLM the Anthropic
    SDK is added as a failover target, and vice versa.  With no API key
    the gateway has no providers and every call fails as unavailable.
    """
    providers: list[ModelProvider] = []
    if settings.model_configured:
        from conductor.gateway.anthropic_provider import AnthropicProvider
        from conductor.gateway.litellm_provider import LiteLLMProvider

        api_key = settings.ANTHROPIC_API_KEY.get_secret_value()
        litellm_provider = LiteLLMProvider(
            settings.MODEL_NAME, api_key=api_key, timeout=settings.MODEL_TIMEOUT_SECONDS
        )
        anthropic_provider = AnthropicProvider(
            settings.MODEL_NAME, api_key=api_key, timeout=settings.MODEL_TIMEOUT_SECONDS
        )
        if settings.MODEL_PROVIDER == "anthropic":
            providers = [anthropic_provider, litellm_provider]
        else:
            providers = [litellm_provider, anthropic_provider]
    else:
        logger.warning("ANTHROPIC_API_KEY not configured - model gateway DISABLED")

    policy = replace(DEFAULT_RETRY_POLICY, max_attempts=settings.RETRY_MAX_ATTEMPTS)
    return ModelGateway(
        providers,
        breakers=breakers,
        policy=policy,
        timeout=settings.MODEL_TIMEOUT_SECONDS,
    )


__all__ = [
    "ModelGateway",
    "ModelProvider",
    "ModelRequest",
    "ModelResponse",
    "ModelStream",
    "ModelToolCall",
    "StreamChunk",
    "build_gateway",
    "classify_failure",
    "extract_json",
    "parse_retry_after",
]
