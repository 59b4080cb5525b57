"""Provider health checks: ping each adapter before starting a session."""

import asyncio
import logging

from thinktank.providers.base import AIProvider, LLMMessage, LLMRequest, MessageRole

logger = logging.getLogger(__name__)

_PING_PROMPT = "Reply with the word OK only."
_TIMEOUT_SEC = 15.0
_PING_MAX_TOKENS = 16


async def _check_one(name: str, provider: AIProvider) -> tuple[str, bool, str]:
    """Ping a single provider. Returns (name, ok, error_message)."""
    request = LLMRequest(
        model=provider.model_string(),
        messages=[LLMMessage(role=MessageRole.USER, content=_PING_PROMPT)],
        max_tokens=_PING_MAX_TOKENS,
    )
    try:
        await asyncio.wait_for(provider.complete(request), timeout=_TIMEOUT_SEC)
        return name, True, ""
    except TimeoutError:
        return name, False, f"timed out after {_TIMEOUT_SEC:g}s"
    except Exception as exc:
        logger.debug("Health check for %s failed: %s", name, exc)
        return name, False, str(exc)


async def run_health_checks(
    providers: dict[str, AIProvider],
) -> dict[str, tuple[bool, str]]:
    """Ping all providers in parallel.

    Returns:
        Dict mapping provider name -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(n, p) for n, p in providers.items()))
    return {name: (ok, err) for name, ok, err in results}
