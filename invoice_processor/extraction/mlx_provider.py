"""MLX-VLM extraction provider for self-hosted vision model inference.

Talks to an MLX-VLM HTTP service that fetches the image URL itself and
answers with the model's invoice JSON. The response body goes through the
same recovery pipeline as any other completion, since local models are
just as prone to fenced or truncated output.

Expected endpoints:
- POST {base_url}/extract  {"image_url": "..."}
- GET  {base_url}/health
"""

import logging

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from invoice_processor.extraction.base import ExtractionProvider, ExtractionResult
from invoice_processor.shared.config import Settings
from invoice_processor.shared.errors import ErrorKind

logger = logging.getLogger(__name__)


class MLXExtractionProvider(ExtractionProvider):
    """Extraction provider backed by a self-hosted MLX-VLM service."""

    def __init__(self, settings: Settings) -> None:
        """Initialize MLX extraction provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._base_url = settings.mlx_service_url.rstrip("/")
        self._client = httpx.Client(timeout=settings.mlx_timeout_seconds)  # VLMs are slow

    @property
    def provider_name(self) -> str:
        """Get provider name for logging/metrics.

        Returns:
            Provider identifier 'mlx'
        """
        return "mlx"

    def is_available(self) -> bool:
        """Check if the MLX service URL is configured."""
        return bool(self._base_url)

    def health_check(self) -> bool:
        """Check if the MLX service responds.

        Returns:
            True if GET /health returns 200
        """
        if not self.is_available():
            return False
        try:
            response = self._client.get(f"{self._base_url}/health")
        except httpx.HTTPError as e:
            logger.warning(f"MLX health check failed: {e}")
            return False
        return response.status_code == 200

    def close(self) -> None:
        """Close the HTTP connection pool."""
        self._client.close()

    def extract_invoice(self, image_url: str) -> ExtractionResult:
        """Extract structured invoice data using the MLX-VLM service.

        Args:
            image_url: Public URL of the invoice image

        Returns:
            ExtractionResult with the invoice or error, provider='mlx'
        """
        if not self.is_available():
            return self._failure(
                "MLX service URL is not configured. Set APP_MLX_SERVICE_URL environment variable",
                ErrorKind.CONFIGURATION,
                "validate_configuration",
            )

        try:
            completion = self._call_mlx_with_retry(image_url)
        except httpx.HTTPStatusError as e:
            logger.error(f"MLX service error (status {e.response.status_code}): {e}")
            return self._failure(
                f"MLX service error (status {e.response.status_code}): {e.response.text}",
                ErrorKind.UPSTREAM,
                "call_model",
            )
        except httpx.HTTPError as e:
            logger.error(f"MLX request failed: {e}")
            return self._failure(f"Model call failed: {e}", ErrorKind.UPSTREAM, "call_model")

        return self._result_from_completion(completion)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential_jitter(initial=1, max=30),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _call_mlx_with_retry(self, image_url: str) -> str:
        """POST the image URL to the MLX service.

        Only transport-level failures (connection, timeout) are retried.

        Args:
            image_url: Public URL of the invoice image

        Returns:
            Raw response body text

        Raises:
            httpx.HTTPError: After all retry attempts exhausted or on non-2xx
        """
        response = self._client.post(
            f"{self._base_url}/extract",
            json={"image_url": image_url},
        )
        response.raise_for_status()
        return response.text
