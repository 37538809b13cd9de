from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

USER_AGENT = "yt-backfill/0.1"


class HttpTransportError(Exception):
    """The request never produced an HTTP response (DNS, connect, timeout)."""


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    payload: dict[str, Any]
    raw_body: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class JsonTransport(Protocol):
    def __call__(
        self,
        method: Literal["GET", "POST"],
        url: str,
        *,
        timeout_seconds: float,
        params: Mapping[str, str] | None = None,
        form: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> HttpResponse:
        ...


def request_json(
    method: Literal["GET", "POST"],
    url: str,
    *,
    timeout_seconds: float,
    params: Mapping[str, str] | None = None,
    form: Mapping[str, str] | None = None,
    headers: Mapping[str, str] | None = None,
) -> HttpResponse:
    query = urlencode(dict(params or {}))
    request_url = f"{url}?{query}" if query else url
    request_headers = {
        "accept": "application/json",
        "user-agent": USER_AGENT,
        **dict(headers or {}),
    }
    data: bytes | None = None
    if form is not None:
        data = urlencode(dict(form)).encode("utf-8")
        request_headers["content-type"] = "application/x-www-form-urlencoded"

    request = Request(request_url, data=data, headers=request_headers, method=method)

    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            status_code = int(response.getcode() or 0)
            raw_body = response.read().decode("utf-8", errors="replace")
            response_headers = dict(response.headers.items())
    except HTTPError as exc:
        status_code = int(exc.code)
        raw_body = exc.read().decode("utf-8", errors="replace")
        response_headers = dict(exc.headers.items()) if exc.headers is not None else {}
    except (URLError, TimeoutError, OSError) as exc:
        raise HttpTransportError(f"{method} {url} failed: {exc}") from exc

    return HttpResponse(
        status_code=status_code,
        payload=parse_json_dict(raw_body),
        raw_body=raw_body,
        headers=response_headers,
    )


def parse_json_dict(raw_body: str) -> dict[str, Any]:
    if not raw_body.strip():
        return {}
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError:
        return {}
    return as_dict(parsed)


def as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        raw_list = cast(list[Any], value)
        return list(raw_list)
    return []
