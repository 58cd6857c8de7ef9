"""
LLM utility functions — bounded call wrapper for the reasoning provider.

Shared by the analysis gateway and the conversation summarizer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

logger = logging.getLogger("engine.analysis.llm_utils")


async def llm_generate(
    client: Any,
    model: str,
    contents: Any,
    config: dict[str, Any] | None = None,
    timeout: float | None = None,
    max_retries: int = 0,
) -> str | None:
    """
    Call the LLM with a per-attempt timeout.

    The analysis hot path uses max_retries=0: one attempt, and a failure
    returns None so the caller skips the automated step instead of
    blocking.  Background callers (summaries) may allow a retry with
    exponential backoff: 0.5s, 1.0s, ...

    Empty responses count as failures.
    """
    for attempt in range(max_retries + 1):
        try:
            call = client.aio.models.generate_content(
                model=model,
                contents=contents,
                config=config,
            )
            response = await (asyncio.wait_for(call, timeout) if timeout else call)
            text = response.text
            if isinstance(text, str) and text.strip():
                return text
            logger.warning("LLM returned empty response (attempt %d)", attempt + 1)
        except asyncio.TimeoutError:
            logger.warning(
                "LLM call timed out after %.1fs (attempt %d/%d)",
                timeout, attempt + 1, max_retries + 1,
            )
        except Exception as exc:
            logger.warning(
                "LLM call failed (attempt %d/%d): %s",
                attempt + 1, max_retries + 1, exc,
            )

        if attempt < max_retries:
            await asyncio.sleep(0.5 * (2 ** attempt))

    logger.error("LLM call gave no usable output after %d attempt(s)", max_retries + 1)
    return None
