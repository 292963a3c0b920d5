"""Hugging Face Inference API transport

One logical request per (text, model). Rate-limit and cold-start responses
(HTTP 429/503), timeouts and transport errors are retried with exponential
backoff; any other failure is returned immediately. Callers always receive an
InferenceResponse envelope and never an exception.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import structlog

from botcheck.backend.utils.errors import RetryableUpstreamError, retry_with_backoff

logger = structlog.get_logger()


DEFAULT_BASE_URL = "https://api-inference.huggingface.co"
REQUEST_TIMEOUT = 30.0
MAX_ATTEMPTS = 3
MAX_TEXT_LENGTH = 512
RETRY_STATUS_CODES = {429, 503}


class InferenceAPIError(Exception):
    """Non-retryable failure response from the inference API."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass
class InferenceResponse:
    """Envelope for one inference call.

    Attributes:
        success: Whether the call produced a usable payload
        data: Parsed JSON payload on success
        error: Error description on failure
        status_code: Last HTTP status seen, if any
        attempts: Number of HTTP attempts made
    """
    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    attempts: int = 0


class HuggingFaceInferenceClient:
    """Async client for label classification and text generation models.

    Example:
        >>> client = HuggingFaceInferenceClient(api_key="hf_...")
        >>> response = await client.classify("some text", "openai-community/roberta-base-openai-detector")
        >>> response.success, response.data
        (True, [[{'label': 'Real', 'score': 0.93}, {'label': 'Fake', 'score': 0.07}]])
        >>> await client.aclose()
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = REQUEST_TIMEOUT,
        max_attempts: int = MAX_ATTEMPTS,
        max_text_length: int = MAX_TEXT_LENGTH,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            api_key: Hugging Face API token (sent as a Bearer token)
            base_url: API root; models are addressed as {base_url}/models/{model_id}
            timeout: Per-attempt timeout in seconds
            max_attempts: Total attempts per call, including the first
            max_text_length: Characters of input text sent to the model
            base_delay: Backoff base delay in seconds
            max_delay: Backoff delay cap in seconds
            transport: Optional httpx transport (tests pass httpx.MockTransport)

        Raises:
            ValueError: If api_key is empty
        """
        if not api_key:
            raise ValueError(
                "HUGGINGFACE_API_KEY is required but not set. "
                "Please set HUGGINGFACE_API_KEY to a Hugging Face access token."
            )

        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.max_text_length = max_text_length
        self.base_delay = base_delay
        self.max_delay = max_delay

        self._client = httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=50),
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _truncate(self, text: str) -> str:
        return (text or "")[:self.max_text_length]

    async def classify(self, text: str, model_id: str) -> InferenceResponse:
        """Run a text-classification model and return its label distribution."""
        return await self._invoke(model_id, self._truncate(text), operation="classify")

    async def generate(self, text: str, model_id: str, max_new_tokens: int = 50) -> InferenceResponse:
        """Run a text-generation model with ``text`` as the prompt."""
        return await self._invoke(
            model_id,
            self._truncate(text),
            operation="generate",
            parameters={"max_new_tokens": max_new_tokens, "return_full_text": False},
        )

    async def _invoke(
        self,
        model_id: str,
        text: str,
        operation: str,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> InferenceResponse:
        url = f"{self.base_url}/models/{model_id}"
        payload: Dict[str, Any] = {
            "inputs": text,
            "options": {"wait_for_model": True, "use_cache": True},
        }
        if parameters:
            payload["parameters"] = parameters

        state = {"attempts": 0, "status_code": None}

        async def _attempt() -> Any:
            state["attempts"] += 1
            try:
                response = await self._client.post(url, json=payload)
            except httpx.TimeoutException as e:
                raise RetryableUpstreamError(f"Request timed out: {e}") from e
            except httpx.TransportError as e:
                raise RetryableUpstreamError(f"Transport error: {e}") from e

            state["status_code"] = response.status_code
            if response.status_code in RETRY_STATUS_CODES:
                raise RetryableUpstreamError(
                    f"HTTP {response.status_code}",
                    status_code=response.status_code,
                    body=response.text[:500],
                )
            if not response.is_success:
                raise InferenceAPIError(
                    f"HTTP {response.status_code}: {response.text[:500]}",
                    status_code=response.status_code,
                    body=response.text,
                )
            try:
                return response.json()
            except ValueError as e:
                raise InferenceAPIError(
                    f"Invalid JSON response: {e}",
                    status_code=response.status_code,
                    body=response.text,
                ) from e

        try:
            data = await retry_with_backoff(
                _attempt,
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                operation=f"huggingface_{operation}",
            )
        except (RetryableUpstreamError, InferenceAPIError) as e:
            logger.warning(
                "inference_call_failed",
                model_id=model_id,
                operation=operation,
                attempts=state["attempts"],
                status_code=state["status_code"],
                error=str(e),
                error_type=type(e).__name__,
            )
            return InferenceResponse(
                success=False,
                error=str(e),
                status_code=state["status_code"],
                attempts=state["attempts"],
            )

        logger.debug(
            "inference_call_success",
            model_id=model_id,
            operation=operation,
            attempts=state["attempts"],
        )
        return InferenceResponse(
            success=True,
            data=data,
            status_code=state["status_code"],
            attempts=state["attempts"],
        )
