"""Provider Media API client.

Endpoints (CodeChat / Yumer v2):
- POST /api/v2/instance/{id}/media/message/{messageId}/prepare -> {"mediaId"}
- GET  /api/v2/instance/{id}/media/{mediaId}/file              -> bytes
- POST /api/v2/instance/{id}/media/directly-download           -> bytes
- GET  /api/v2/instance/{id}/media?type=..&keyRemoteJid=..     -> [{"mediaId", "Message": {"messageId"}}]

Security: media keys, URLs and chat ids are NEVER logged.
"""

from __future__ import annotations

import base64
import os
from dataclasses import dataclass
from typing import Any, Protocol

import requests

from chatdesk.observability.logging import get_logger
from chatdesk.observability.redaction import safe_log_context
from chatdesk.whatsapp.models import MediaRef

logger = get_logger(__name__)

HTTP_TIMEOUT = float(os.environ.get("PROVIDER_HTTP_TIMEOUT", "15"))


class ProviderError(Exception):
    """Permanent provider failure (4xx, malformed response)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderUnavailable(ProviderError):
    """Transient provider failure (network, timeout, 429, 5xx). Retryable."""

    pass


@dataclass(frozen=True)
class FetchedMedia:
    data: bytes
    mime_type: str


class ProviderMediaApi(Protocol):
    def prepare(self, instance_id: str, message_id: str) -> str:
        ...

    def fetch_by_handle(
        self, instance_id: str, media_id: str, mime_type: str = "application/octet-stream"
    ) -> FetchedMedia:
        ...

    def direct_decrypt_download(
        self, instance_id: str, ref: MediaRef, content_type: str
    ) -> FetchedMedia:
        ...

    def list_media(self, instance_id: str, content_type: str, chat_id: str) -> list[dict[str, Any]]:
        ...


def _get_config() -> dict[str, str]:
    """Get provider API config from environment.

    Required env vars:
    - PROVIDER_BASE_URL: Base URL (e.g., https://api.provider.example)
    - PROVIDER_API_TOKEN: Bearer token
    """
    base_url = os.environ.get("PROVIDER_BASE_URL", "")
    token = os.environ.get("PROVIDER_API_TOKEN", "")
    if not base_url or not token:
        raise RuntimeError("Missing provider config: PROVIDER_BASE_URL, PROVIDER_API_TOKEN")
    return {"base_url": base_url.rstrip("/"), "token": token}


class HttpProviderMediaApi:
    """ProviderMediaApi over HTTP using requests.

    Args:
        base_url: Provider base URL (PROVIDER_BASE_URL when omitted).
        token: Bearer token (PROVIDER_API_TOKEN when omitted).
        timeout: Per-request timeout in seconds.
        session: Optional requests.Session (connection reuse, tests).
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float = HTTP_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        if base_url is None or token is None:
            config = _get_config()
            base_url = base_url or config["base_url"]
            token = token or config["token"]
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self._base_url}{path}"
        headers = {"Authorization": f"Bearer {self._token}"}
        try:
            response = self._session.request(
                method, url, headers=headers, timeout=self._timeout, **kwargs
            )
        except requests.RequestException as e:
            raise ProviderUnavailable(f"provider request failed: {type(e).__name__}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailable(
                f"provider returned {response.status_code}", response.status_code
            )
        if response.status_code >= 400:
            raise ProviderError(f"provider returned {response.status_code}", response.status_code)
        return response

    def _json(self, response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError("provider returned invalid JSON", response.status_code) from e

    def _media(self, response: requests.Response, fallback_mime: str) -> FetchedMedia:
        content_type = response.headers.get("Content-Type", "")
        if "application/json" in content_type:
            # Some deployments wrap the bytes: {"base64": "...", "mimetype": "..."}
            body = self._json(response)
            encoded = body.get("base64") if isinstance(body, dict) else None
            if not encoded:
                raise ProviderError("provider returned no media bytes", response.status_code)
            return FetchedMedia(
                data=base64.b64decode(encoded),
                mime_type=body.get("mimetype") or fallback_mime,
            )
        if not response.content:
            raise ProviderError("provider returned empty media", response.status_code)
        mime = content_type.split(";")[0].strip()
        if not mime or mime == "application/octet-stream":
            mime = fallback_mime
        return FetchedMedia(data=response.content, mime_type=mime)

    def prepare(self, instance_id: str, message_id: str) -> str:
        response = self._request(
            "POST", f"/api/v2/instance/{instance_id}/media/message/{message_id}/prepare"
        )
        body = self._json(response)
        media_id = body.get("mediaId") if isinstance(body, dict) else None
        if not media_id:
            raise ProviderError("prepare returned no mediaId", response.status_code)
        return str(media_id)

    def fetch_by_handle(
        self, instance_id: str, media_id: str, mime_type: str = "application/octet-stream"
    ) -> FetchedMedia:
        """Download staged media. mime_type is used when the response has none."""
        response = self._request("GET", f"/api/v2/instance/{instance_id}/media/{media_id}/file")
        return self._media(response, mime_type)

    def direct_decrypt_download(
        self, instance_id: str, ref: MediaRef, content_type: str
    ) -> FetchedMedia:
        payload = {
            "contentType": content_type,
            "content": {
                "url": ref.url,
                "mimetype": ref.mime_type,
                "mediaKey": ref.media_key,
                "directPath": ref.direct_path or "",
            },
        }
        response = self._request(
            "POST", f"/api/v2/instance/{instance_id}/media/directly-download", json=payload
        )
        return self._media(response, ref.mime_type)

    def list_media(self, instance_id: str, content_type: str, chat_id: str) -> list[dict[str, Any]]:
        response = self._request(
            "GET",
            f"/api/v2/instance/{instance_id}/media",
            params={"type": content_type, "keyRemoteJid": chat_id},
        )
        body = self._json(response)
        if isinstance(body, dict):
            body = body.get("medias") or body.get("data") or []
        if not isinstance(body, list):
            raise ProviderError("list_media returned unexpected shape", response.status_code)
        logger.info(
            "provider media listed",
            extra={"extra_fields": safe_log_context(content_type=content_type, count=len(body))},
        )
        return body
