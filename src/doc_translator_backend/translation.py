"""
Client for a LibreTranslate-compatible translation service.

The remote engine is opaque: we send text with ``source="auto"`` and a target
language code and get translated text back. Failures are mapped onto three
typed errors (ServiceError, ServiceUnavailable, RequestError) so callers can
decide retry policy from the error kind. This client never retries.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from .errors import RequestError, ServiceError, ServiceUnavailable
from .models import Language

logger = logging.getLogger(__name__)


class TranslationClient:
    """
    Thin wrapper over the remote ``/translate`` and ``/languages`` endpoints.

    Attributes:
        base_url: Root URL of the translation service
        timeout: Per-call timeout in seconds; expiry maps to ServiceUnavailable
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def translate(self, text: str, target_language: str) -> str:
        """
        Translate ``text`` into ``target_language``.

        Whitespace-only input returns an empty string without calling the
        remote service.

        Raises:
            ServiceError: The service answered with a non-success response
            ServiceUnavailable: No response (network failure or timeout)
            RequestError: The request could not be built or sent
        """
        if not text or not text.strip():
            return ""

        payload: Dict[str, Any] = {
            "q": text,
            "source": "auto",
            "target": target_language,
            "format": "text",
        }
        if self.api_key:
            payload["api_key"] = self.api_key

        data = self._request("POST", "/translate", json=payload)
        translated = data.get("translatedText") if isinstance(data, dict) else None
        if not isinstance(translated, str):
            raise ServiceError(200, f"Response is missing translatedText: {data!r}"[:500])
        return translated

    def languages(self) -> List[Language]:
        data = self._request("GET", "/languages")
        if not isinstance(data, list):
            raise ServiceError(200, f"Unexpected languages payload: {data!r}"[:500])
        return [Language(code=item["code"], name=item["name"]) for item in data]

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning(f"Translation request to {url} timed out after {self.timeout}s")
            raise ServiceUnavailable(f"timed out after {self.timeout}s") from exc
        except (httpx.UnsupportedProtocol, httpx.LocalProtocolError, httpx.InvalidURL) as exc:
            raise RequestError(str(exc)) from exc
        except httpx.TransportError as exc:
            logger.warning(f"Translation service unreachable at {url}: {exc}")
            raise ServiceUnavailable(str(exc) or exc.__class__.__name__) from exc

        if not response.is_success:
            logger.error(f"Translation API error: {response.status_code} - {response.text}")
            raise ServiceError(response.status_code, response.text)

        try:
            return response.json()
        except ValueError as exc:
            raise ServiceError(response.status_code, response.text[:500]) from exc
