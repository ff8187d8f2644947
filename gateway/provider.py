import logging
from typing import Any, Optional

from groq import APIError, Groq

from ledger.errors import ConfigError, ProviderFailure

logger = logging.getLogger(__name__)


class GenerationProvider:
    """Seam in front of the paid generation API."""

    def generate(self, model: str, contents: Any, config: Optional[dict] = None) -> dict:
        raise NotImplementedError


class GroqProvider(GenerationProvider):
    def __init__(self, api_key: Optional[str], default_model: str = "llama-3.3-70b-versatile", timeout: float = 60.0):
        if not api_key:
            raise ConfigError("Server configuration error: Missing API Key")
        self.client = Groq(api_key=api_key, timeout=timeout)
        self.default_model = default_model

    def generate(self, model: str, contents: Any, config: Optional[dict] = None) -> dict:
        config = config or {}
        try:
            response = self.client.chat.completions.create(
                model=model or self.default_model,
                messages=self._to_messages(contents, config.get("system_instruction")),
                temperature=config.get("temperature", 0.7),
                max_tokens=config.get("max_tokens", 1024),
            )
        except APIError as e:
            logger.error("Groq error: %s", e)
            raise ProviderFailure(f"AI Generation Failed: {e}") from e

        return {
            "model": response.model,
            "content": response.choices[0].message.content,
            "finish_reason": response.choices[0].finish_reason,
        }

    def _to_messages(self, contents: Any, system_instruction: Optional[str]) -> list[dict]:
        messages = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        if isinstance(contents, str):
            messages.append({"role": "user", "content": contents})
        elif isinstance(contents, list):
            messages.extend(contents)
        else:
            messages.append({"role": "user", "content": str(contents)})
        return messages
