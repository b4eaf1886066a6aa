from __future__ import annotations

import json
from typing import Any
from urllib import request as urlrequest
from urllib.error import HTTPError, URLError


class CollaboratorError(RuntimeError):
    def __init__(self, service: str, message: str, retryable: bool = False) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service
        self.retryable = retryable


def post_json(service: str, url: str, payload: dict[str, Any], timeout_s: float) -> Any:
    req = urlrequest.Request(
        url=url,
        data=json.dumps(payload, default=str).encode("utf-8"),
        method="POST",
        headers={"Content-Type": "application/json"},
    )
    try:
        with urlrequest.urlopen(req, timeout=timeout_s) as resp:
            return json.loads(resp.read().decode("utf-8") or "null")
    except HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")[:300]
        raise CollaboratorError(service, f"http_{exc.code}: {detail}", exc.code >= 500) from exc
    except URLError as exc:
        raise CollaboratorError(service, f"network_error: {exc}", True) from exc
    except json.JSONDecodeError as exc:
        raise CollaboratorError(service, "invalid JSON response") from exc
