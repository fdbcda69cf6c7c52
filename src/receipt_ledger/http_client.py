from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Mapping


class HttpRequestError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> str | None:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    def json(self) -> dict:
        if not self.body:
            return {}
        return json.loads(self.body.decode("utf-8", errors="replace"))


def post_bytes(
    url: str,
    data: bytes,
    *,
    headers: Mapping[str, str] | None = None,
    timeout_s: float = 10.0,
) -> HttpResponse:
    req = urllib.request.Request(url, data=data, headers=dict(headers or {}), method="POST")
    return _send(req, timeout_s=timeout_s)


def get_json(url: str, *, headers: Mapping[str, str] | None = None, timeout_s: float = 10.0) -> dict:
    merged = {"Accept": "application/json", **dict(headers or {})}
    req = urllib.request.Request(url, headers=merged, method="GET")
    return _send(req, timeout_s=timeout_s).json()


def _send(req: urllib.request.Request, *, timeout_s: float) -> HttpResponse:
    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            return HttpResponse(status=resp.status, headers=dict(resp.headers.items()), body=resp.read())
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
        raise HttpRequestError(f"HTTP {exc.code} from {req.full_url}: {body}", status=exc.code) from exc
    except urllib.error.URLError as exc:
        raise HttpRequestError(f"Request to {req.full_url} failed: {exc.reason}") from exc
