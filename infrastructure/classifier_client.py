"""
Classifier Client: Upstream Sentiment Classification
====================================================

Thin adapter over an OpenAI-compatible chat completions endpoint:
- Fixed system instruction demanding a strict JSON object
- Explicit timeout, no retries (retry policy belongs to callers)
- Provider errors mapped onto the gateway exception taxonomy
- Token usage returned alongside the parsed classification
"""

import json
import time
from dataclasses import dataclass
from typing import Optional

import httpx
from loguru import logger
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, OpenAIError
from pydantic import ValidationError as PydanticValidationError

from config.settings import UpstreamSettings
from core.exceptions import UpstreamError, UpstreamParseError, UpstreamTimeoutError
from core.models import Classification, TokenUsage
from infrastructure.monitoring import MetricsCollector

SYSTEM_PROMPT = (
    "Generate a JSON object using RFC 8259 ONLY, no description required in response "
    "JUST JSON Object; DO NOT GENERATE ANY ADDITIONAL TEXT OTHER THAN THE JSON RESPONSE. "
    "and do the following \r\n"
    " 1. Detect language\r\n"
    " 2. sentiment analysis\r\n"
    " 2a. sentiment score\r\n"
    " 2b. sentiment value (negative, neutral, positive)\r\n"
    " 3. profanity score\r\n"
    " 4. identify profane words and add to array\r\n"
    " 5. identify intents and add to array. if the message is about an order then intent "
    "is order_status, if the intent is a complaint about an order then intent is "
    "order_status, new_complaint. if the intent is about an existing complaint then intent "
    "is complaint_status, if the message is asking about something then intent is "
    "information and classify all others in others. The response object should be like "
    "{sentiment:{score: value, sentiment: value}, profanity: {score: value, words:[]}, "
    "intents: [], language: value}"
)


@dataclass(frozen=True)
class ClassifierResponse:
    """Parsed classification plus upstream accounting."""

    classification: Classification
    usage: TokenUsage
    model: str
    latency_ms: float


class ClassifierClient:
    """
    Upstream classification adapter.

    Usage:
        client = ClassifierClient(settings.upstream)
        response = await client.classify("I love this", "gpt-3.5-turbo-0125")
    """

    def __init__(
        self,
        settings: Optional[UpstreamSettings] = None,
        client: Optional[AsyncOpenAI] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._settings = settings or UpstreamSettings()
        self.timeout = self._settings.timeout
        self._metrics = metrics

        api_key = (
            self._settings.api_key.get_secret_value() if self._settings.api_key else "not-configured"
        )
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=self._settings.base_url,
            timeout=httpx.Timeout(self.timeout),
            max_retries=0,
        )

        logger.info(
            f"ClassifierClient initialized | base_url={self._settings.base_url} | "
            f"timeout={self.timeout}s | key_configured={self._settings.api_key is not None}"
        )

    async def classify(self, text: str, model: str) -> ClassifierResponse:
        """
        Classify already-normalized text.

        Raises:
            UpstreamTimeoutError: Request exceeded the configured timeout
            UpstreamError: Transport or HTTP failure
            UpstreamParseError: Reply is not the expected JSON object
        """
        start_time = time.perf_counter()

        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": text},
                ],
            )
        except APITimeoutError as e:
            self._record(model, "timeout", start_time)
            raise UpstreamTimeoutError(
                f"Request timeout: {e}", model=model, timeout_seconds=self.timeout, cause=e
            ) from e
        except APIStatusError as e:
            self._record(model, "error", start_time)
            raise UpstreamError(
                f"Provider error: {e.message}", model=model, status=e.status_code, cause=e
            ) from e
        except (APIConnectionError, OpenAIError) as e:
            self._record(model, "error", start_time)
            raise UpstreamError(f"Provider error: {e}", model=model, cause=e) from e

        latency_ms = (time.perf_counter() - start_time) * 1000
        content = response.choices[0].message.content if response.choices else None
        usage = self._parse_usage(response.usage)

        try:
            classification = self.parse_content(content)
        except UpstreamParseError:
            self._record(model, "parse_error", start_time, usage)
            logger.error(
                f"Error parsing classifier response | model={model} | "
                f"text={text!r} | raw={content!r}"
            )
            raise

        self._record(model, "success", start_time, usage)
        logger.debug(
            f"Classified text | model={model} | tokens={usage.total_tokens} | "
            f"latency={latency_ms:.0f}ms"
        )

        return ClassifierResponse(
            classification=classification,
            usage=usage,
            model=model,
            latency_ms=latency_ms,
        )

    @staticmethod
    def parse_content(content: Optional[str]) -> Classification:
        """Decode the reply body into a `Classification`."""
        if not content:
            raise UpstreamParseError("Empty response from classifier", response_text=content)

        try:
            payload = json.loads(content)
        except ValueError as e:
            raise UpstreamParseError(
                "Failed to parse classifier response", response_text=content, cause=e
            ) from e

        if not isinstance(payload, dict):
            raise UpstreamParseError(
                "Classifier response is not a JSON object", response_text=content
            )

        try:
            return Classification.model_validate(payload)
        except PydanticValidationError as e:
            raise UpstreamParseError(
                f"Classifier response violates schema: {e.error_count()} errors",
                response_text=content,
                cause=e,
            ) from e

    @staticmethod
    def _parse_usage(usage) -> TokenUsage:
        if usage is None:
            return TokenUsage()
        return TokenUsage(
            prompt_tokens=usage.prompt_tokens or 0,
            completion_tokens=usage.completion_tokens or 0,
            total_tokens=(usage.prompt_tokens or 0) + (usage.completion_tokens or 0),
        )

    def _record(
        self,
        model: str,
        status: str,
        start_time: float,
        usage: Optional[TokenUsage] = None,
    ) -> None:
        if not self._metrics:
            return
        self._metrics.record_upstream_call(
            model=model,
            status=status,
            latency_seconds=time.perf_counter() - start_time,
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
        )

    async def close(self) -> None:
        await self._client.close()


__all__ = ["SYSTEM_PROMPT", "ClassifierClient", "ClassifierResponse"]
