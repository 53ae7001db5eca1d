"""
LLM Service
Centralized transport for OpenAI-compatible chat completion APIs
"""

import logging
from typing import Dict, Optional, Any
import json
import asyncio

import requests

from config import settings


logger = logging.getLogger(__name__)


class LLMService:
    """
    Service for interacting with an OpenAI-compatible LLM endpoint
    Handles all AI model calls for the application
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model_name: Optional[str] = None
    ):
        self.api_key = api_key if api_key is not None else settings.LLM_API_KEY
        self.base_url = (base_url or settings.LLM_BASE_URL).rstrip("/")
        self.model_name = model_name or settings.LLM_MODEL
        self.temperature = settings.LLM_TEMPERATURE
        self.max_tokens = settings.LLM_MAX_TOKENS
        self.request_timeout = settings.LLM_TIMEOUT_SECONDS

        # Usage tracking
        self._total_tokens_used = 0
        self._request_count = 0

        if not self.is_configured:
            logger.warning("LLM_API_KEY not configured; text analysis will use fallbacks")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) and self.api_key != "skip_llm_features"

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> str:
        """
        Generate a response from the LLM

        Args:
            prompt: User prompt/message
            system_prompt: System instructions
            temperature: Sampling temperature (0-1)
            max_tokens: Maximum response tokens

        Returns:
            Generated text response

        Raises:
            RuntimeError: if the provider is not configured or answers with an error
            requests.RequestException: on transport failure
        """
        if not self.is_configured:
            raise RuntimeError("LLM is not configured. Set LLM_API_KEY.")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        payload = {
            "model": self.model_name,
            "messages": messages,
            "temperature": temperature if temperature is not None else self.temperature,
            "max_tokens": max_tokens if max_tokens is not None else self.max_tokens,
        }

        resp = await asyncio.get_running_loop().run_in_executor(
            None,
            lambda: requests.post(
                f"{self.base_url}/chat/completions",
                headers=headers,
                json=payload,
                timeout=self.request_timeout,
            ),
        )

        if resp.status_code != 200:
            logger.error("LLM API error %s: %s", resp.status_code, resp.text[:500])
            raise RuntimeError(f"LLM API error: {resp.status_code}")

        data = resp.json()
        choices = data.get("choices") or []
        if not choices:
            return ""
        text = choices[0].get("message", {}).get("content", "") or ""

        usage = data.get("usage") or {}
        self._total_tokens_used += usage.get("total_tokens", 0)
        self._request_count += 1

        return text

    async def generate_json(
        self,
        prompt: str,
        schema_hint: Optional[Dict[str, Any]] = None,
        system_prompt: Optional[str] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """
        Generate a JSON object response from the LLM

        Args:
            prompt: User prompt
            schema_hint: Example of expected JSON structure
            system_prompt: System instructions

        Returns:
            Parsed JSON object

        Raises:
            ValueError: if the response is not a single JSON object
        """
        json_system = system_prompt or ""
        json_system += "\n\nYou must respond with valid JSON only. No additional text, no markdown code blocks, just pure JSON."

        if schema_hint:
            json_system += f"\n\nExpected JSON structure:\n{json.dumps(schema_hint, indent=2)}"

        response = await self.generate(
            prompt=prompt,
            system_prompt=json_system,
            **kwargs
        )

        return self.parse_json_response(response)

    @staticmethod
    def parse_json_response(response: str) -> Dict[str, Any]:
        """
        Strictly parse a JSON object from an LLM response.

        Only surrounding whitespace is tolerated. Markdown fences or prose
        around the object are rejected rather than repaired.

        Raises:
            ValueError: if the text is not exactly one JSON object
        """
        if not response or not response.strip():
            raise ValueError("Empty LLM response")

        parsed = json.loads(response.strip())
        if not isinstance(parsed, dict):
            raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")

        return parsed

    def get_usage_stats(self) -> Dict[str, Any]:
        """Get usage statistics"""
        return {
            "total_tokens": self._total_tokens_used,
            "request_count": self._request_count,
            "model": self.model_name,
            "configured": self.is_configured
        }


# Singleton instance
llm_service = LLMService()
