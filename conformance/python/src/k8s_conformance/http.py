from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any

from k8s_conformance.errors import SubjectUnreachable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HttpResponse:
    url: str
    status_code: int
    text: str
    headers: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value.split(";", 1)[0].strip().lower()
        return ""

    def json(self) -> Any:
        return json.loads(self.text)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class HttpClient:
    def __init__(self, *, base_url: str, timeout_s: float = 5.0, headers: dict[str, str] | None = None) -> None:
        self._base_url = base_url if base_url.endswith("/") else base_url + "/"
        self._timeout_s = timeout_s
        self._headers = dict(headers or {})

    @property
    def base_url(self) -> str:
        return self._base_url

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any | None = None,
        headers: dict[str, str] | None = None,
    ) -> HttpResponse:
        url = urllib.parse.urljoin(self._base_url, path.lstrip("/"))
        req_headers = {**self._headers, **(headers or {})}
        data: bytes | None = None
        if json_body is not None:
            data = json.dumps(json_body).encode("utf-8")
            req_headers.setdefault("Content-Type", "application/json")

        request = urllib.request.Request(url=url, data=data, method=method.upper())
        for key, value in req_headers.items():
            request.add_header(key, value)

        try:
            with urllib.request.urlopen(request, timeout=self._timeout_s) as response:
                return HttpResponse(
                    url=url,
                    status_code=response.getcode(),
                    text=response.read().decode("utf-8", errors="replace"),
                    headers=dict(response.headers.items()),
                )
        except urllib.error.HTTPError as exc:
            return HttpResponse(
                url=url,
                status_code=exc.code,
                text=exc.read().decode("utf-8", errors="replace"),
                headers=dict(exc.headers.items()) if exc.headers else {},
            )
        except (urllib.error.URLError, OSError) as exc:
            return HttpResponse(url=url, status_code=0, text="", error=f"{exc.__class__.__name__}: {exc}")

    def get(self, path: str, *, headers: dict[str, str] | None = None) -> HttpResponse:
        return self.request("GET", path, headers=headers)


def wait_for_body(
    client: HttpClient,
    path: str,
    *,
    contains: str,
    timeout_s: float,
    interval_s: float = 1.0,
) -> HttpResponse:
    deadline = time.time() + timeout_s
    last: HttpResponse | None = None
    while True:
        last = client.get(path)
        if last.ok and contains in last.text:
            logger.info("Subject endpoint %s is live", last.url)
            return last
        logger.debug("Probe %s not ready: status=%s error=%s", last.url, last.status_code, last.error)
        if time.time() + interval_s > deadline:
            break
        time.sleep(interval_s)

    details: dict[str, Any] = {"url": last.url, "status": last.status_code}
    if last.error:
        details["error"] = last.error
    raise SubjectUnreachable(
        f"Subject did not answer {path} with a body containing {contains!r} within {timeout_s:g}s",
        details=details,
    )
