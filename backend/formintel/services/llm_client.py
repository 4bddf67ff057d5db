"""
LLM provider client for OpenAI-compatible chat completion APIs.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Union
import requests

from formintel.config import Config
from formintel.exceptions import LlmProviderError, ProviderTimeoutError
from formintel.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

MessageContent = Union[str, List[Dict[str, Any]]]


@dataclass
class LlmCompletion:
    """One chat completion: first choice content plus usage."""
    content: str
    finish_reason: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)
    model: str = ""


class LlmClient:
    """
    Thin client for ``POST {api_base}/chat/completions``.

    Transport failures (connection, HTTP status, timeout) raise; the content
    of a successful completion is returned as-is, including empty content,
    so the classifier can tell "truncated" from "no content".
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
        rate_limiter: Optional[RateLimiter] = None,
        session: Optional[requests.Session] = None
    ):
        self.api_key = api_key or Config.LLM_API_KEY
        self.api_base = (api_base or Config.LLM_API_BASE).rstrip('/')
        self.model = model or Config.LLM_MODEL
        self.max_tokens = max_tokens or Config.LLM_MAX_TOKENS
        self.temperature = Config.LLM_TEMPERATURE if temperature is None else temperature
        self.timeout = timeout or Config.LLM_TIMEOUT
        self.rate_limiter = rate_limiter
        self.session = session or requests.Session()

        if not self.api_key:
            logger.warning("LLM API key not configured. Set LLM_API_KEY or OPENAI_API_KEY.")

    def complete(
        self,
        system_prompt: str,
        user_content: MessageContent,
        reasoning_effort: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None
    ) -> LlmCompletion:
        """
        Send a system + user prompt and return the first choice.

        Args:
            system_prompt: System message text
            user_content: User message text, or a list of content parts
                (text / image_url) for vision requests
            reasoning_effort: 'low' | 'medium' | 'high', omitted when None
            model: Override the configured model
            max_tokens: Override the configured token limit

        Raises:
            LlmProviderError: on connection/HTTP errors or malformed responses
            ProviderTimeoutError: if the request timed out
            RateLimitExceededError: if the process call budget is exhausted
        """
        if self.rate_limiter:
            self.rate_limiter.acquire('llm')

        payload: Dict[str, Any] = {
            "model": model or self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content}
            ],
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature
        }
        if reasoning_effort:
            payload["reasoning_effort"] = reasoning_effort

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

        try:
            response = self.session.post(
                f"{self.api_base}/chat/completions",
                headers=headers,
                json=payload,
                timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except requests.Timeout as e:
            raise ProviderTimeoutError(
                f"LLM request timed out after {self.timeout}s", provider='llm'
            ) from e
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            body = e.response.text[:300] if e.response is not None else ''
            raise LlmProviderError(
                f"LLM request failed with HTTP {status}: {body}", provider='llm', status_code=status
            ) from e
        except requests.RequestException as e:
            raise LlmProviderError(f"LLM request failed: {e}", provider='llm') from e
        except ValueError as e:
            raise LlmProviderError(f"LLM response was not JSON: {e}", provider='llm') from e

        choices = data.get('choices') or []
        if not choices:
            raise LlmProviderError("LLM response contained no choices", provider='llm')

        choice = choices[0]
        content = (choice.get('message') or {}).get('content') or ''
        usage = data.get('usage') or {}
        logger.debug(
            f"LLM completion: {len(content)} chars, finish_reason={choice.get('finish_reason')}, "
            f"tokens={usage.get('total_tokens', 0)}"
        )
        return LlmCompletion(
            content=content,
            finish_reason=choice.get('finish_reason'),
            usage=usage,
            model=data.get('model', payload['model'])
        )
