"""OpenAI API Client Wrapper

This module provides an OpenAIClient wrapper around the official openai Python SDK
used as an alternative generation backend for the generation-based signal
(GENERATION_BACKEND=openai). Includes bearer token authentication, monthly
cost tracking and structured error logging.

The client exposes the same ``generate(text, model_id)`` shape as the Hugging
Face transport and returns the same InferenceResponse envelope, so the
classifier layer can use either backend interchangeably.
"""

import os
from typing import Any, Dict, Optional
from datetime import datetime
import structlog
import openai

from botcheck.inference import InferenceResponse


def _get_logger():
    """Get logger instance (allows for easier mocking in tests)."""
    return structlog.get_logger()


CONTINUATION_SYSTEM_PROMPT = (
    "Continue the user's text naturally, in the same voice and style. "
    "Reply with the continuation only, no preamble."
)


class OpenAIClient:
    """OpenAI chat-completions client used for text continuation.

    Validates the API key at initialization, logs API errors with request
    context, and tracks token usage for cost monitoring with monthly reset and
    a $60 warning threshold.

    Attributes:
        client: Async OpenAI SDK client instance
        model: Chat model used for every continuation
        monthly_prompt_tokens: Total prompt tokens used in current calendar month
        monthly_completion_tokens: Total completion tokens used in current calendar month
        current_month: Current month tuple (year, month)

    Example:
        >>> client = OpenAIClient()
        >>> response = await client.generate("I really think the market will", "gpt2")
        >>> response.data
        [{'generated_text': ' keep climbing through the end of the quarter.'}]
    """

    # Cost constants for gpt-4o-mini (per 1M tokens)
    COST_PER_1M_INPUT_TOKENS = 0.15  # $0.15 per 1M input tokens
    COST_PER_1M_OUTPUT_TOKENS = 0.60  # $0.60 per 1M output tokens
    MONTHLY_COST_WARNING_THRESHOLD = 60.0  # $60 warning threshold

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        max_text_length: int = 512,
        timeout: float = 30.0,
        max_retries: int = 2,
    ):
        """Initialize OpenAI client.

        Args:
            api_key: API key; read from OPENAI_API_KEY when omitted
            model: Chat model used for continuations (default: gpt-4o-mini)
            max_text_length: Characters of input text sent to the model
            timeout: Seconds before a request is abandoned
            max_retries: Retries the SDK makes on 429, 5xx and connection errors

        Raises:
            ValueError: If no API key is available
        """
        if api_key is None:
            api_key = os.environ.get("OPENAI_API_KEY", "")
        api_key = api_key.strip()

        if not api_key:
            raise ValueError(
                "OPENAI_API_KEY environment variable is required but not set. "
                "Please set OPENAI_API_KEY to your OpenAI API key."
            )

        self.client = openai.AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=max_retries)
        self.model = model
        self.max_text_length = max_text_length
        self.monthly_prompt_tokens = 0
        self.monthly_completion_tokens = 0
        now = datetime.now()
        self.current_month = (now.year, now.month)

        _get_logger().info("openai_client_initialized", model=model, month=f"{now.year}-{now.month:02d}")

    @property
    def monthly_tokens(self) -> int:
        """Total tokens used this month."""
        return self.monthly_prompt_tokens + self.monthly_completion_tokens

    def _check_and_reset_monthly_tracking(self) -> None:
        """Check if month changed and reset tracking if needed."""
        now = datetime.now()
        current_period = (now.year, now.month)

        if current_period != self.current_month:
            _get_logger().info(
                "monthly_cost_tracking_reset",
                old_month=f"{self.current_month[0]}-{self.current_month[1]:02d}",
                new_month=f"{now.year}-{now.month:02d}",
                old_tokens=self.monthly_tokens
            )
            self.monthly_prompt_tokens = 0
            self.monthly_completion_tokens = 0
            self.current_month = current_period

    def _calculate_monthly_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        """Add this call's usage to the monthly totals and return the estimated monthly cost in dollars."""
        self._check_and_reset_monthly_tracking()
        self.monthly_prompt_tokens += prompt_tokens
        self.monthly_completion_tokens += completion_tokens

        input_cost = (self.monthly_prompt_tokens / 1_000_000) * self.COST_PER_1M_INPUT_TOKENS
        output_cost = (self.monthly_completion_tokens / 1_000_000) * self.COST_PER_1M_OUTPUT_TOKENS
        return input_cost + output_cost

    async def generate(self, text: str, model_id: str, max_new_tokens: int = 50) -> InferenceResponse:
        """Generate a continuation of ``text``.

        ``model_id`` names the signal's configured generation model; the
        OpenAI backend always uses ``self.model`` and records the requested id
        in its logs.

        Args:
            text: Prompt text (truncated to max_text_length)
            model_id: Generation model configured for the signal
            max_new_tokens: Max completion tokens (default: 50)

        Returns:
            InferenceResponse with data ``[{"generated_text": ...}]`` on success,
            or success=False with the error message on any API failure
        """
        prompt = (text or "")[:self.max_text_length]
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": CONTINUATION_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.7,
                max_tokens=max_new_tokens,
            )
        except openai.OpenAIError as e:
            status_code = getattr(e, "status_code", None)
            _get_logger().error(
                "openai_api_error",
                error_type=type(e).__name__,
                error_message=str(e),
                model=self.model,
                requested_model_id=model_id,
                prompt_length=len(prompt),
            )
            return InferenceResponse(success=False, error=str(e), status_code=status_code, attempts=1)

        content = response.choices[0].message.content or ""
        usage = self._extract_usage(response)

        monthly_cost = self._calculate_monthly_cost(usage["prompt_tokens"], usage["completion_tokens"])

        _get_logger().info(
            "openai_generation_success",
            model=self.model,
            requested_model_id=model_id,
            prompt_tokens=usage["prompt_tokens"],
            completion_tokens=usage["completion_tokens"],
            total_tokens=usage["total_tokens"],
            monthly_tokens=self.monthly_tokens,
            estimated_monthly_cost=round(monthly_cost, 2)
        )

        if monthly_cost >= self.MONTHLY_COST_WARNING_THRESHOLD:
            _get_logger().warning(
                "monthly_cost_threshold_exceeded",
                monthly_cost=round(monthly_cost, 2),
                threshold=self.MONTHLY_COST_WARNING_THRESHOLD,
                monthly_tokens=self.monthly_tokens,
                month=f"{self.current_month[0]}-{self.current_month[1]:02d}"
            )

        return InferenceResponse(
            success=True,
            data=[{"generated_text": content}],
            status_code=200,
            attempts=1,
        )

    @staticmethod
    def _extract_usage(response: Any) -> Dict[str, int]:
        usage = getattr(response, "usage", None)
        prompt_tokens = getattr(usage, "prompt_tokens", 0)
        completion_tokens = getattr(usage, "completion_tokens", 0)
        if not isinstance(prompt_tokens, int):
            prompt_tokens = 0
        if not isinstance(completion_tokens, int):
            completion_tokens = 0
        return {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        }

    async def aclose(self) -> None:
        await self.client.close()
