from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import quote

import requests

from icsmirror.errors import NotFound, RejectedByServer, TransientSyncFailure
from icsmirror.models import CalDAVConfig

log = logging.getLogger(__name__)

ICS_CONTENT_TYPE = "text/calendar; charset=utf-8"
# Statuses that say "try again later" rather than "this request is wrong".
RETRYABLE_CLIENT_STATUSES = frozenset({408, 425, 429})


@dataclass
class PutResult:
    url: str
    status_code: int
    etag: str = ""


def classify_status(status_code: int, url: str, reason: str = "") -> None:
    if 200 <= status_code < 300:
        return
    message = f"{status_code} {reason}".strip() + f" from {url}"
    if status_code >= 500 or status_code in RETRYABLE_CLIENT_STATUSES:
        raise TransientSyncFailure(message, status_code=status_code)
    raise RejectedByServer(message, status_code=status_code)


class CalDAVTransport:
    """PUTs and GETs single-event ICS resources in one CalDAV collection."""

    def __init__(self, config: CalDAVConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()
        if config.username:
            self.session.auth = (config.username, config.password)

    def is_configured(self) -> bool:
        return bool(self.config.collection_url)

    def resource_url(self, uid: str) -> str:
        base = self.config.collection_url.rstrip("/")
        return f"{base}/{quote(uid, safe='@')}.ics"

    def _request(self, method: str, url: str, **kwargs: object) -> requests.Response:
        if not self.is_configured():
            raise RejectedByServer("CalDAV collection_url is not configured")
        try:
            return self.session.request(method, url, timeout=self.config.timeout_seconds, **kwargs)
        except requests.Timeout as exc:
            raise TransientSyncFailure(f"timeout after {self.config.timeout_seconds}s on {method} {url}") from exc
        except requests.ConnectionError as exc:
            raise TransientSyncFailure(f"connection error on {method} {url}: {exc}") from exc
        except requests.RequestException as exc:
            raise RejectedByServer(f"{method} {url} failed: {exc}") from exc

    def put(self, uid: str, ics: str, etag: str | None = None) -> PutResult:
        url = self.resource_url(uid)
        headers = {"Content-Type": ICS_CONTENT_TYPE}
        if etag:
            headers["If-Match"] = etag
        response = self._request("PUT", url, data=ics.encode("utf-8"), headers=headers)
        classify_status(response.status_code, url, response.reason or "")
        log.debug("PUT %s -> %s", url, response.status_code)
        return PutResult(url=url, status_code=response.status_code, etag=response.headers.get("ETag", ""))

    def get(self, uid: str) -> str:
        url = self.resource_url(uid)
        response = self._request("GET", url, headers={"Accept": "text/calendar"})
        if response.status_code == 404:
            raise NotFound(f"No remote resource at {url}")
        classify_status(response.status_code, url, response.reason or "")
        return response.text
