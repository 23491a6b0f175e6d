"""One-sentence change summaries from an OpenAI-compatible endpoint."""

import logging
from typing import Dict, Optional, Tuple

from openai import AsyncOpenAI

from pagewatch.config import settings
from pagewatch.db.models import AppSettings

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = """You are a helpful assistant for a website change monitor.
The following is a diff of a website check.
Summarize the key changes (like price, status, content, numbers) in ONE short, natural language sentence for a notification.
Do not mention technical details like HTML tags unless relevant.
Focus on what changed for the user.
{hint}
Old Content:
"{old}"

New Content:
"{new}"

Summary:
"""


def _uses_completion_tokens(model: str) -> bool:
    """Reasoning models reject max_tokens."""
    return model.startswith("o1") or model.startswith("o3")


class ChangeSummarizer:
    """
    Summarizes a change in one sentence.

    Works with OpenAI or any server exposing the same API (e.g. Ollama via
    ``ai_base_url``). Every failure yields None so a summary can never block a
    check.
    """

    def __init__(self, timeout: float = None, max_tokens: int = None, input_max_chars: int = None):
        self.timeout = timeout or settings.ai_timeout_seconds
        self.max_tokens = max_tokens or settings.ai_max_tokens
        self.input_max_chars = input_max_chars or settings.ai_input_max_chars
        self._clients: Dict[Tuple[Optional[str], Optional[str]], AsyncOpenAI] = {}

    def _get_client(self, base_url: Optional[str], api_key: Optional[str]) -> AsyncOpenAI:
        """Get or create a client for this endpoint/key pair."""
        key = (base_url, api_key)
        if key not in self._clients:
            kwargs = {"api_key": api_key or "ollama", "timeout": self.timeout}
            if base_url:
                kwargs["base_url"] = base_url
            self._clients[key] = AsyncOpenAI(**kwargs)
        return self._clients[key]

    async def summarize(
        self,
        old: Optional[str],
        new: Optional[str],
        hint: Optional[str] = None,
        config: Optional[AppSettings] = None,
    ) -> Optional[str]:
        """
        Summarize the change from ``old`` to ``new``.

        Args:
            old: Previous value
            new: Current value
            hint: Extra context for the prompt (e.g. "price in EUR")
            config: Runtime AI settings

        Returns:
            Summary sentence, or None when disabled or on any failure
        """
        if config is None or not config.ai_enabled:
            return None
        if not config.ai_api_key and not config.ai_base_url:
            logger.info("AI summaries enabled but no API key or base URL configured")
            return None

        model = config.ai_model or "gpt-3.5-turbo"
        prompt = PROMPT_TEMPLATE.format(
            hint=f"Context: {hint}\n" if hint else "",
            old=(old or "")[: self.input_max_chars],
            new=(new or "")[: self.input_max_chars],
        )
        request = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
        }
        if _uses_completion_tokens(model):
            request["max_completion_tokens"] = self.max_tokens
        else:
            request["max_tokens"] = self.max_tokens

        try:
            client = self._get_client(config.ai_base_url, config.ai_api_key)
            response = await client.chat.completions.create(**request)
            content = response.choices[0].message.content
        except Exception as e:
            logger.warning(f"AI summary failed ({model}): {type(e).__name__}: {e}")
            return None

        summary = (content or "").strip()
        if not summary:
            return None
        logger.debug(f"AI summary: {summary}")
        return summary

    async def close(self):
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
