"""
HTTP failure classification and a webhook publisher.

``classify_http_error`` maps ``httpx`` exceptions onto ``PublishError``
kinds so that every HTTP-based publisher feeds the scheduler the same
retry signals:

    ======================  =====================
    Failure                 Kind
    ======================  =====================
    timeout                 TIMEOUT
    connection / transport  TRANSIENT
    429                     RATE_LIMITED
    5xx                     TRANSIENT
    401                     CREDENTIALS_EXPIRED
    403                     PERMISSION_REVOKED
    400, 413, 422           CONTENT_REJECTED
    other 4xx               INVALID_REQUEST
    ======================  =====================
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from social_publisher.exceptions import PublishError, PublishFailureKind
from social_publisher.models import MediaAttachment, Platform, PublishResult
from social_publisher.publishers.base import PlatformPublisher

logger = logging.getLogger(__name__)

_CONTENT_REJECTED_CODES = {400, 413, 422}


def _response_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        for key in ("message", "error_description", "error", "detail"):
            if payload.get(key):
                return str(payload[key])[:200]
    return str(payload)[:200]


def classify_http_error(exc: httpx.HTTPError) -> PublishError:
    """Convert an ``httpx`` exception into a classified ``PublishError``."""
    if isinstance(exc, httpx.TimeoutException):
        return PublishError(f"Request timed out: {exc}", kind=PublishFailureKind.TIMEOUT)

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        detail = _response_detail(exc.response)
        reason = f"HTTP {status}: {detail}" if detail else f"HTTP {status}"
        if status == 429:
            kind = PublishFailureKind.RATE_LIMITED
        elif status >= 500:
            kind = PublishFailureKind.TRANSIENT
        elif status == 401:
            kind = PublishFailureKind.CREDENTIALS_EXPIRED
        elif status == 403:
            kind = PublishFailureKind.PERMISSION_REVOKED
        elif status in _CONTENT_REJECTED_CODES:
            kind = PublishFailureKind.CONTENT_REJECTED
        else:
            kind = PublishFailureKind.INVALID_REQUEST
        return PublishError(reason, kind=kind)

    return PublishError(f"Transport error: {exc}", kind=PublishFailureKind.TRANSIENT)


class WebhookPublisher(PlatformPublisher):
    """Publishes by POSTing a JSON payload to a per-integration webhook.

    The integration credentials must contain ``webhook_url`` and may
    contain ``token`` (sent as a bearer token). The endpoint answers with
    ``{"id": ..., "permalink": ..., "metrics": {...}}``; an ``id`` is
    required.

    Args:
        client: Optional shared ``httpx.AsyncClient``. When omitted a
            client is opened per call.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self.client = client
        self.timeout = timeout

    def _build_payload(
        self,
        platform: Platform,
        content_snapshot: str,
        media: List[MediaAttachment],
    ) -> Dict[str, Any]:
        return {
            "platform": platform.value,
            "text": content_snapshot,
            "media": [m.to_dict() for m in media],
        }

    def _headers(self, credentials: Dict[str, Any]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if credentials.get("token"):
            headers["Authorization"] = f"Bearer {credentials['token']}"
        return headers

    async def publish(
        self,
        platform: Platform,
        credentials: Dict[str, Any],
        content_snapshot: str,
        media: List[MediaAttachment],
    ) -> PublishResult:
        url = credentials.get("webhook_url")
        if not url:
            raise PublishError(
                "Integration credentials have no webhook_url",
                kind=PublishFailureKind.INVALID_REQUEST,
            )

        payload = self._build_payload(platform, content_snapshot, media)
        try:
            if self.client is not None:
                response = await self.client.post(
                    url, json=payload, headers=self._headers(credentials), timeout=self.timeout
                )
                response.raise_for_status()
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        url, json=payload, headers=self._headers(credentials)
                    )
                    response.raise_for_status()
        except httpx.HTTPError as exc:
            raise classify_http_error(exc) from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise PublishError(
                "Webhook returned a non-JSON body", kind=PublishFailureKind.INVALID_REQUEST
            ) from exc
        if not isinstance(data, dict) or not data.get("id"):
            raise PublishError(
                "Webhook response has no post id", kind=PublishFailureKind.INVALID_REQUEST
            )

        logger.info("[PUBLISHER] Webhook accepted %s post id=%s", platform.value, data["id"])
        return PublishResult(
            platform_post_id=str(data["id"]),
            permalink=data.get("permalink"),
            metrics={k: int(v) for k, v in (data.get("metrics") or {}).items()},
            partial=bool(data.get("partial", False)),
        )


__all__ = ["classify_http_error", "WebhookPublisher"]
