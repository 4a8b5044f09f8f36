"""
LLMClient: async client for the LLM collaborator (OpenAI-compatible and Azure).
- complete(system_prompt, user_prompt) -> text
- bounded per-call timeout, retry with exponential backoff
- raises CollaboratorUnavailableError once retries are exhausted
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .config import get_settings
from .errors import CollaboratorUnavailableError
from .metrics import llm_calls_total

logger = logging.getLogger(__name__)


class LLMClient:
    def __init__(
        self,
        provider: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout_s: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base_s: float = 1.0,
        **kwargs,
    ):
        cfg = get_settings()
        self.provider = (provider or cfg.LLM_PROVIDER).lower()
        self.api_key = api_key if api_key is not None else cfg.LLM_API_KEY
        self.base_url = base_url or cfg.LLM_BASE_URL
        self.model = model or cfg.LLM_MODEL
        self.timeout_s = float(timeout_s if timeout_s is not None else cfg.LLM_TIMEOUT_SECONDS)
        self.max_retries = max(1, int(max_retries if max_retries is not None else cfg.LLM_MAX_RETRIES))
        self.backoff_base_s = backoff_base_s
        self.temperature = kwargs.pop("temperature", cfg.LLM_TEMPERATURE)
        self.max_tokens = kwargs.pop("max_tokens", cfg.LLM_MAX_TOKENS)
        self.deployment_id = kwargs.pop("deployment_id", cfg.AZURE_DEPLOYMENT_ID)
        self.session: Optional[aiohttp.ClientSession] = None
        self.extra = kwargs

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
        return self.session

    async def complete(self, system_prompt: str, user_prompt: str, **kwargs) -> str:
        """Get a completion from the configured provider."""
        if self.provider == "openai":
            url = self.base_url or "https://api.openai.com/v1/chat/completions"
            headers = {
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            }
            payload: Dict[str, Any] = {"model": kwargs.pop("model", self.model)}
        elif self.provider == "azure":
            if not self.deployment_id:
                raise CollaboratorUnavailableError("Azure OpenAI requires deployment_id.")
            if not self.base_url:
                raise CollaboratorUnavailableError("Azure OpenAI requires base_url (https://<resource>.openai.azure.com).")
            url = (
                f"{self.base_url.rstrip('/')}/openai/deployments/{self.deployment_id}"
                "/chat/completions?api-version=2024-02-01"
            )
            headers = {
                "api-key": self.api_key,
                "Content-Type": "application/json",
            }
            payload = {}
        else:
            raise CollaboratorUnavailableError(f"Provider {self.provider} not supported.")

        payload.update(
            {
                "messages": self._messages(system_prompt, user_prompt),
                "max_tokens": kwargs.pop("max_tokens", self.max_tokens),
                "temperature": kwargs.pop("temperature", self.temperature),
            }
        )
        payload.update(self.extra)
        payload.update(kwargs)
        return await self._post_with_retries(url, headers, payload)

    @staticmethod
    def _messages(system_prompt: str, user_prompt: str) -> List[Dict[str, str]]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})
        return messages

    async def _post_with_retries(self, url: str, headers: Dict[str, str], payload: Dict[str, Any]) -> str:
        session = await self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        last_error = "no attempt made"
        for attempt in range(self.max_retries):
            try:
                async with session.post(url, headers=headers, json=payload, timeout=timeout) as resp:
                    if resp.status == 200:
                        data = await resp.json()
                        llm_calls_total.labels(outcome="success").inc()
                        return data["choices"][0]["message"]["content"] or ""
                    err = await resp.text()
                    last_error = f"HTTP {resp.status}: {err[:200]}"
                    logger.error("%s completion error: %s %s", self.provider, resp.status, err[:500])
                    if 400 <= resp.status < 500 and resp.status != 429:
                        # client errors will not improve on retry
                        break
            except asyncio.TimeoutError:
                last_error = f"timed out after {self.timeout_s}s"
                logger.error("%s completion timed out (attempt %d/%d)", self.provider, attempt + 1, self.max_retries)
            except (aiohttp.ClientError, KeyError, IndexError, ValueError) as e:
                last_error = str(e)
                logger.error("%s completion request failed: %s", self.provider, e)
            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.backoff_base_s * (2 ** attempt))
        llm_calls_total.labels(outcome="failure").inc()
        raise CollaboratorUnavailableError(
            f"{self.provider} completion failed after {self.max_retries} attempt(s): {last_error}"
        )

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None
