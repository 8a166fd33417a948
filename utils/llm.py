"""Claude API client for code generation."""

import asyncio
import json
import logging
import os
import re

import anthropic

from config.defaults import DEFAULTS
from config.models import get_model_config

logger = logging.getLogger(__name__)

_client = None


def get_client():
    """Return a shared async Anthropic client. Raises if no API key is set."""
    global _client
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        raise RuntimeError(
            "ANTHROPIC_API_KEY environment variable is not set. "
            "Get a key at https://console.anthropic.com/ and run:\n"
            "  export ANTHROPIC_API_KEY='your-key-here'"
        )
    if _client is None:
        _client = anthropic.AsyncAnthropic(api_key=api_key)
    return _client


def _as_messages(user_message):
    if isinstance(user_message, str):
        return [{"role": "user", "content": user_message}]
    return list(user_message)


def _strip_json_fences(text):
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```\w*\n?", "", cleaned)
        cleaned = re.sub(r"\n?```$", "", cleaned)
    return cleaned


async def stream_llm(system_prompt, user_message, on_chunk=None, chunk_size=None, action=None):
    """Stream a completion, calling ``on_chunk(text)`` with roughly ``chunk_size`` characters at a time.

    Args:
        system_prompt: System prompt string.
        user_message: A user message string or a full messages list.
        on_chunk: Optional callback receiving text as it arrives.
        chunk_size: Minimum characters buffered before ``on_chunk`` fires.
        action: Key into config.models.AGENT_CONFIG.

    Returns:
        The full response text.
    """
    client = get_client()
    cfg = get_model_config(action)
    chunk_size = chunk_size or DEFAULTS["stream_chunk_size"]

    last_error = None
    for attempt in range(2):
        text = ""
        pending = ""
        emitted = False
        try:
            async with client.messages.stream(
                model=cfg["model"],
                max_tokens=cfg["max_tokens"],
                temperature=cfg["temperature"],
                system=system_prompt,
                messages=_as_messages(user_message),
            ) as stream:
                async for piece in stream.text_stream:
                    text += piece
                    if on_chunk is None:
                        continue
                    pending += piece
                    if len(pending) >= chunk_size:
                        on_chunk(pending)
                        emitted = True
                        pending = ""
                final = await stream.get_final_message()

            if pending and on_chunk is not None:
                on_chunk(pending)
            if final.stop_reason == "max_tokens":
                logger.warning("Response for %s hit the token limit", action or "default")
            return text

        except anthropic.APIError as e:
            last_error = e
            # A retry after partial output would duplicate chunks downstream.
            if attempt == 0 and not emitted:
                logger.warning("Inference call failed (%s); retrying", e)
                await asyncio.sleep(2)
                continue
            raise

    raise last_error


async def call_llm(system_prompt, user_message, response_format=None, action=None):
    """Call Claude with optional structured JSON output.

    Args:
        system_prompt: System prompt string.
        user_message: User message string or messages list.
        response_format: If "json", appends instruction to return valid JSON
                         and attempts to parse the response.
        action: Key into config.models.AGENT_CONFIG.

    Returns:
        Raw text string, or parsed dict/list if response_format="json".
        When JSON parsing fails the raw text is returned.
    """
    if response_format == "json":
        system_prompt = system_prompt + "\n\nIMPORTANT: Respond ONLY with valid JSON. No markdown fences, no commentary."

    text = await stream_llm(system_prompt, user_message, action=action)

    if response_format == "json":
        try:
            return json.loads(_strip_json_fences(text))
        except json.JSONDecodeError:
            return text
    return text
