"""Generation backend client, pacing, and invocation strategies."""

from .invokers import (
    BackoffInvoker,
    GenerationInvoker,
    InvocationRequest,
    TruncatingInvoker,
    build_invoker_stack,
)
from .openrouter_client import OpenRouterChatClient
from .prompts import PromptBuilder, PromptLibrary
from .rate_limiter import RateLimiter

__all__ = [
    "BackoffInvoker",
    "GenerationInvoker",
    "InvocationRequest",
    "OpenRouterChatClient",
    "PromptBuilder",
    "PromptLibrary",
    "RateLimiter",
    "TruncatingInvoker",
    "build_invoker_stack",
]
