"""
Face Match Provider - external identity-verification API client

Compares a freshly captured still against the reference selfie recorded when
the user's identity document was verified. The biometric comparison itself
is opaque; this client only moves images and reads back a score (0-100).
"""
import logging
from typing import Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception

from presence_cert.config import settings

logger = logging.getLogger(__name__)


class FaceMatchProviderError(Exception):
    """Transport, auth or protocol failure talking to the provider."""


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TimeoutException):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


def normalize_score(raw, scale: float = 100.0) -> float:
    """Map a provider score reported on 0..scale onto 0-100."""
    try:
        score = float(raw or 0)
    except (TypeError, ValueError):
        return 0.0
    score = score * 100.0 / scale
    return max(0.0, min(score, 100.0))


class FaceMatchProvider:

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        score_scale: Optional[float] = None
    ):
        self.api_url = api_url or settings.FACE_MATCH_API_URL
        self.api_key = api_key if api_key is not None else settings.FACE_MATCH_API_KEY
        self.timeout = timeout or settings.FACE_MATCH_TIMEOUT_SEC
        self._transport = transport
        self.score_scale = score_scale or settings.FACE_MATCH_SCORE_SCALE

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception(_is_retryable),
        reraise=True
    )
    async def _download(self, url: str) -> bytes:
        async with self._client() as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.content

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception(_is_retryable),
        reraise=True
    )
    async def _post_match(self, live_image: bytes, reference_image: bytes) -> dict:
        files = {
            "user_image": ("live_selfie.jpg", live_image, "image/jpeg"),
            "ref_image": ("reference.jpg", reference_image, "image/jpeg"),
        }
        async with self._client() as client:
            response = await client.post(
                self.api_url,
                files=files,
                headers={"x-api-key": self.api_key}
            )
            response.raise_for_status()
            return response.json()

    async def fetch_reference(self, url: str) -> bytes:
        try:
            content = await self._download(url)
        except httpx.HTTPError as e:
            logger.error(f"Failed to download reference selfie: {e}")
            raise FaceMatchProviderError("Unable to retrieve the reference photo.") from e
        logger.debug(f"Reference selfie downloaded, size: {len(content)} bytes")
        return content

    async def compare(self, live_image: bytes, reference_image: bytes) -> float:
        """
        Run the comparison.

        Returns:
            Similarity score in [0, 100]

        Raises:
            FaceMatchProviderError: transport failure, non-2xx answer or
                unreadable payload (after retries for timeouts and 5xx)
        """
        try:
            result = await self._post_match(live_image, reference_image)
        except httpx.HTTPStatusError as e:
            logger.error(f"Face match API error: {e.response.status_code}")
            raise FaceMatchProviderError("Face verification failed.") from e
        except httpx.HTTPError as e:
            logger.error(f"Face match API unreachable: {e}")
            raise FaceMatchProviderError("Face verification failed.") from e
        except ValueError as e:
            logger.error(f"Face match API returned invalid JSON: {e}")
            raise FaceMatchProviderError("Face verification failed.") from e

        score = normalize_score(result.get("score") or result.get("similarity"), self.score_scale)
        logger.info(f"Face match score: {score:.1f}")
        return score


# Singleton instance
face_match_provider = FaceMatchProvider()
