"""Image service client.

Uploads run after content has been committed and never inside a content
transaction.
"""

from __future__ import annotations

import base64
import os
from typing import Any, Protocol
from uuid import UUID

from core.logger import get_logger
from db.models import ContentImage
from db.repository import insert_with_tenant

from ._http import CollaboratorError, post_json

logger = get_logger(__name__)


class ImageService(Protocol):
    def upload(self, *, bytes_or_url: bytes | str, alt_text: str | None) -> dict[str, Any]: ...


class HttpImageService:
    def __init__(self, base_url: str, timeout_s: float = 60.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    def upload(self, *, bytes_or_url: bytes | str, alt_text: str | None) -> dict[str, Any]:
        payload: dict[str, Any] = {"alt_text": alt_text}
        if isinstance(bytes_or_url, bytes):
            payload["data"] = base64.b64encode(bytes_or_url).decode("ascii")
        else:
            payload["url"] = bytes_or_url
        response = post_json("images", f"{self.base_url}/upload", payload, self.timeout_s)
        if not isinstance(response, dict) or not response.get("cdnUrl"):
            raise CollaboratorError("images", "upload response missing cdnUrl")
        return response


_SERVICE: ImageService | None = None


def set_image_service(service: ImageService | None) -> None:
    global _SERVICE
    _SERVICE = service


def get_image_service() -> ImageService | None:
    if _SERVICE is not None:
        return _SERVICE
    base_url = os.getenv("IMAGE_SERVICE_URL", "").strip()
    if not base_url:
        return None
    return HttpImageService(base_url, float(os.getenv("IMAGE_SERVICE_TIMEOUT_S", "60")))


def upload_and_associate(
    account_id: UUID,
    *,
    bytes_or_url: bytes | str,
    gen_content_type: str,
    gen_content_id: int,
    alt_text: str | None = None,
) -> dict[str, Any]:
    service = get_image_service()
    if service is None:
        raise CollaboratorError("images", "IMAGE_SERVICE_URL is not configured")
    response = service.upload(bytes_or_url=bytes_or_url, alt_text=alt_text)
    insert_with_tenant(
        ContentImage,
        account_id,
        {
            "gen_content_type": gen_content_type,
            "gen_content_id": gen_content_id,
            "cdn_url": response["cdnUrl"],
            "external_id": response.get("externalId"),
            "alt_text": alt_text,
        },
    )
    logger.info("image_associated", gen_content_type=gen_content_type, gen_content_id=gen_content_id)
    return {"cdnUrl": response["cdnUrl"], "externalId": response.get("externalId")}
