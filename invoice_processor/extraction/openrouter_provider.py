"""OpenRouter-based extraction provider for invoice images.

OpenRouter exposes an OpenAI-compatible chat completions API, so the
official OpenAI SDK is pointed at it via ``base_url``. The vision model
receives the image URL plus a prompt describing the canonical invoice JSON;
its completion is then parsed by the shared recovery pipeline.

Includes retry logic with exponential backoff for transient API errors.
"""

import logging
from typing import Any

from openai import (
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    OpenAI,
    RateLimitError,
)
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from invoice_processor.extraction.base import ExtractionProvider, ExtractionResult
from invoice_processor.shared.config import Settings
from invoice_processor.shared.errors import ErrorKind

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (APIConnectionError, APITimeoutError, RateLimitError, InternalServerError)

SYSTEM_PROMPT = """You are an invoice data extraction assistant. \
Extract the following information from the invoice image:
- Vendor name
- Invoice number
- Invoice date (in YYYY-MM-DD format)
- Due date (in YYYY-MM-DD format)
- Line items (including description, details, quantity, unit price, total, and category for each)
- Subtotal
- Tax rate percentage
- Tax amount
- Discount (if any)
- Total due amount

Format your response as a valid JSON object with the following structure:
{
  "vendor_name": "...",
  "invoice_number": "...",
  "invoice_date": "YYYY-MM-DD",
  "due_date": "YYYY-MM-DD",
  "items": [
    {
      "description": "...",
      "details": ["...", "..."],
      "quantity": 0.0,
      "unit_price": 0.0,
      "total": 0.0,
      "category": "..."
    }
  ],
  "subtotal": 0.0,
  "tax_rate_percent": 0.0,
  "tax_amount": 0.0,
  "discount": 0.0,
  "total_due": 0.0
}

For each line item, if you can infer the category (e.g. "Food", "Office Supplies", \
"Travel", etc.) from the description, provide it. If not, leave it as an empty string "".

Do not include any other text in your response, only provide the JSON."""

USER_PROMPT = "Extract the data from this invoice image."


class OpenRouterExtractionProvider(ExtractionProvider):
    """Extraction provider using a vision model hosted on OpenRouter.

    Requires APP_OPENROUTER_API_KEY.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize OpenRouter extraction provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._client: OpenAI | None = None
        self._retry_wait = wait_exponential_jitter(initial=1, max=30)

    @property
    def provider_name(self) -> str:
        """Get provider name for logging/metrics.

        Returns:
            Provider identifier 'openrouter'
        """
        return "openrouter"

    def is_available(self) -> bool:
        """Check if the OpenRouter API key is configured.

        Returns:
            True if an API key is set
        """
        return bool(self.settings.openrouter_api_key)

    def _get_client(self) -> OpenAI:
        if self._client is None:
            # Retries are handled by tenacity, not the SDK
            self._client = OpenAI(
                api_key=self.settings.openrouter_api_key,
                base_url=self.settings.openrouter_base_url,
                timeout=self.settings.openrouter_timeout_seconds,
                max_retries=0,
            )
        return self._client

    def close(self) -> None:
        """Close the OpenAI client if one was created."""
        if self._client is not None:
            self._client.close()
            self._client = None

    def extract_invoice(self, image_url: str) -> ExtractionResult:
        """Extract structured invoice data from an image using OpenRouter.

        Args:
            image_url: Public URL of the invoice image

        Returns:
            ExtractionResult with the invoice or error, provider='openrouter'
        """
        if not self.is_available():
            return self._failure(
                "OpenRouter API key is not configured. "
                "Set APP_OPENROUTER_API_KEY environment variable",
                ErrorKind.CONFIGURATION,
                "validate_configuration",
            )

        if not image_url:
            return self._failure(
                "Empty image URL provided", ErrorKind.UPSTREAM, "validate_request"
            )

        try:
            response = self._call_model_with_retry(image_url)
        except Exception as e:
            logger.error(f"OpenRouter request failed: {e}")
            return self._failure(f"Model call failed: {e}", ErrorKind.UPSTREAM, "call_model")

        if not response.choices:
            return self._failure(
                "no choices in response", ErrorKind.UPSTREAM, "check_response_choices"
            )

        completion = response.choices[0].message.content or ""
        logger.debug(f"Raw completion from OpenRouter: {completion}")
        return self._result_from_completion(completion)

    def _call_model_with_retry(self, image_url: str) -> Any:
        """Call the chat completions API, retrying transient errors.

        Uses exponential backoff with jitter for rate limits, timeouts and
        5xx responses. Client errors (4xx) are surfaced immediately.

        Args:
            image_url: Public URL of the invoice image

        Returns:
            Chat completion response

        Raises:
            Exception: After all retry attempts are exhausted
        """
        client = self._get_client()
        for attempt in Retrying(
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            wait=self._retry_wait,
            stop=stop_after_attempt(max(1, self.settings.openrouter_max_retries)),
            reraise=True,
        ):
            with attempt:
                return client.chat.completions.create(
                    model=self.settings.openrouter_model_id,
                    messages=self._build_messages(image_url),  # type: ignore[arg-type]
                    temperature=0,  # Deterministic output
                    extra_headers={"HTTP-Referer": self.settings.openrouter_referer},
                )
        raise RuntimeError("unreachable: retry loop exited without result")

    def _build_messages(self, image_url: str) -> list[dict[str, Any]]:
        """Build the system prompt and the image-bearing user message.

        Args:
            image_url: Public URL of the invoice image

        Returns:
            Chat messages for the completions API
        """
        return [
            {"role": "system", "content": [{"type": "text", "text": SYSTEM_PROMPT}]},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": USER_PROMPT},
                    {"type": "image_url", "image_url": {"url": image_url}},
                ],
            },
        ]
