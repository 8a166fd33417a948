"""Conversation processor: turns a chat message into a reply and an enhanced request."""

import logging
import os

from agents.base import BaseAgent, blueprint_text, phases_text
from utils.llm import call_llm

logger = logging.getLogger(__name__)

_PROMPT_FILE = os.path.join(os.path.dirname(__file__), "prompts", "conversation.txt")

FALLBACK_RESPONSE = (
    "I received your message and I'm passing it along. "
    "It will be incorporated in the next phase of development."
)


def _load_prompt():
    with open(_PROMPT_FILE) as f:
        return f.read()


class ConversationProcessor(BaseAgent):
    name = "conversation"
    action = "conversation"

    async def run(self, message, state):
        """Return (user_response, enhanced_user_request). Never raises."""
        history = "\n".join(
            f"{m.get('role', 'user')}: {m.get('content', '')}" for m in state.conversation_messages[-10:]
        ) or "(none)"
        user_message = (
            f"Original request:\n{state.query}\n\n"
            f"Blueprint:\n{blueprint_text(state)}\n\n"
            f"Progress:\n{phases_text(state)}\n\n"
            f"Conversation so far:\n{history}\n\n"
            f"New message:\n{message}"
        )
        try:
            result = await call_llm(_load_prompt(), user_message, response_format="json", action=self.action)
        except Exception:
            logger.exception("Conversation processing failed")
            return FALLBACK_RESPONSE, f"User request: {message}"

        if not isinstance(result, dict):
            return FALLBACK_RESPONSE, f"User request: {message}"
        reply = result.get("user_response") or FALLBACK_RESPONSE
        enhanced = result.get("enhanced_user_request") or f"User request: {message}"
        return reply, enhanced
