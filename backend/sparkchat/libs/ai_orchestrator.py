import json
import logging
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from sparkchat.libs.ai_system_prompt import get_file_request_hint, get_system_prompt
from sparkchat.libs.config import AI_SENDER_ID, AI_TRIGGER, OPENAI_API_KEY, OPENAI_MODEL
from sparkchat.libs.file_tree import ai_message_text, extract_file_request

logger = logging.getLogger(__name__)

MAX_HISTORY_MESSAGES = 10


class AIServiceError(Exception):
    """The AI provider failed or returned something unusable."""


def strip_trigger(message: str) -> str:
    """Remove the @ai mention from a chat message."""
    return message.replace(AI_TRIGGER, "").strip()


def wants_ai_reply(message: str) -> bool:
    return AI_TRIGGER in (message or "")


class AIOrchestrator:
    """Generates assistant replies for a project chat."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: str = OPENAI_MODEL):
        """Initialize the orchestrator.

        Args:
            client: OpenAI client; one is built from OPENAI_API_KEY when omitted
            model: Chat completion model name
        """
        self._client = client
        self.model = model

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=OPENAI_API_KEY)
        return self._client

    def build_messages(
        self,
        prompt: str,
        history: Optional[List[Dict[str, Any]]] = None,
        file_tree: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, str]]:
        """Assemble the chat completion request.

        Recent chat history is replayed so follow-ups ("now make it blue")
        have context; AI messages are replayed as their text only.
        """
        messages = [{"role": "system", "content": get_system_prompt(file_tree)}]

        for item in (history or [])[-MAX_HISTORY_MESSAGES:]:
            sender = item.get("sender") or {}
            if sender.get("_id") == AI_SENDER_ID:
                messages.append({"role": "assistant", "content": ai_message_text(item.get("message", ""))})
            else:
                author = sender.get("email") or "user"
                messages.append({"role": "user", "content": f"{author}: {item.get('message', '')}"})

        requested_file = extract_file_request(prompt)
        if requested_file:
            logger.info("User requested file %s", requested_file)
            messages.append({"role": "system", "content": get_file_request_hint(requested_file)})

        messages.append({"role": "user", "content": prompt})
        return messages

    async def generate_result(
        self,
        prompt: str,
        history: Optional[List[Dict[str, Any]]] = None,
        file_tree: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Ask the model and return its reply as a JSON string.

        Raises:
            AIServiceError: if the provider call fails or the reply is empty
        """
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=self.build_messages(prompt, history, file_tree),
                temperature=0.4,
                response_format={"type": "json_object"},
            )
        except OpenAIError as e:
            logger.error("AI request failed: %s", e)
            raise AIServiceError(str(e)) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise AIServiceError("Empty response from AI")

        # JSON mode should guarantee an object; wrap anything else as text
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError:
            return json.dumps({"text": content})
        if not isinstance(parsed, dict):
            return json.dumps({"text": content})
        return content


def error_reply(reason: str) -> str:
    """AI message body used when generation fails."""
    return json.dumps({"text": f"Sorry, I couldn't generate a response ({reason})."})
