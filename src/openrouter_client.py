"""
OpenRouter LLM client.

Used for chat session summaries. Unlike a best-effort helper, every failure
here raises SummarizationError: the lifecycle manager records the outcome on
the Summary row, so failures must be visible rather than swallowed.
"""

import httpx
import logging
from typing import Optional, Dict, Any
from .config import get_settings
from .errors import SummarizationError

logger = logging.getLogger(__name__)


class OpenRouterClient:
    def __init__(self):
        self.settings = get_settings()
        self.api_key = self.settings.openrouter_api_key
        self.model_summary = self.settings.openrouter_model_summary
        self.timeout = float(self.settings.llm_timeout)
        self.base_url = self.settings.openrouter_base_url.rstrip("/")

    async def _call_llm(
        self,
        prompt: str,
        max_tokens: int = 500,
        temperature: float = 0.3,
        json_mode: bool = False,
        model: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Make a request to the chat completions API.

        Returns:
            {"content": str, "tokens_used": int, "model": str}
        """
        if not self.api_key:
            raise SummarizationError("OpenRouter API key is not configured")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        payload: Dict[str, Any] = {
            "model": model or self.model_summary,
            "messages": [
                {"role": "user", "content": prompt}
            ],
            "max_tokens": max_tokens,
            "temperature": temperature
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers=headers,
                    json=payload
                )
        except httpx.TimeoutException as e:
            logger.warning(f"LLM call timed out after {self.timeout}s")
            raise SummarizationError(f"LLM request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.error(f"LLM call failed: {e}")
            raise SummarizationError(f"LLM request failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"OpenRouter API error: {response.status_code} - {response.text}")
            raise SummarizationError(
                f"OpenRouter API error {response.status_code}: {response.text[:300]}"
            )

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise SummarizationError(f"Malformed LLM response: {e}") from e

        if not content or not str(content).strip():
            raise SummarizationError("LLM returned an empty response")

        usage = data.get("usage") or {}
        return {
            "content": str(content),
            "tokens_used": int(usage.get("total_tokens") or 0),
            "model": data.get("model") or payload["model"],
        }


# Module-level instance
_client: Optional[OpenRouterClient] = None


def get_llm_client() -> OpenRouterClient:
    """Get or create the global LLM client"""
    global _client
    if _client is None:
        _client = OpenRouterClient()
    return _client
