"""Cursor-paginated collection from the Hedera mirror node REST API."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

import requests


_LOGGER = logging.getLogger("tally.mirror")

STOP_EXHAUSTED = "exhausted"
STOP_EMPTY_PAGE = "empty_page"
STOP_HTTP_ERROR = "http_error"
STOP_REQUEST_ERROR = "request_error"
STOP_INVALID_RESPONSE = "invalid_response"
STOP_MAX_PAGES = "max_pages"
STOP_DEADLINE = "deadline"

TRUNCATING_STOPS = frozenset(
    {STOP_HTTP_ERROR, STOP_REQUEST_ERROR, STOP_INVALID_RESPONSE, STOP_MAX_PAGES, STOP_DEADLINE}
)
NEXT_URL_LOG_EVERY = 10


class MirrorClient:
    """Single HTTP client shared by every stream.

    Consecutive requests are spaced at least ``delay`` seconds apart no matter
    which stream issues them, so running streams back to back keeps one
    request budget.
    """

    def __init__(
        self,
        base_url: str,
        delay: float = 0.2,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.delay = delay
        self.timeout = timeout
        self.session = session or requests.Session()
        self.clock = clock
        self._sleep = sleep
        self._last_request: Optional[float] = None

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def resolve(self, link: str) -> str:
        if link.startswith(("http://", "https://")):
            return link
        return urljoin(self.base_url + "/", link)

    def get(self, url: str, params: Optional[Sequence[Tuple[str, str]]] = None) -> requests.Response:
        self._wait()
        try:
            return self.session.get(
                url,
                params=params,
                headers={"accept": "application/json"},
                timeout=self.timeout,
            )
        finally:
            self._last_request = self.clock()

    def close(self) -> None:
        self.session.close()

    def _wait(self) -> None:
        if self._last_request is None or self.delay <= 0:
            return
        remaining = self.delay - (self.clock() - self._last_request)
        if remaining > 0:
            self._sleep(remaining)


@dataclass(frozen=True)
class StreamQuery:
    name: str
    path: str
    params: Tuple[Tuple[str, str], ...]
    results_key: str


@dataclass
class StreamResult:
    name: str
    records: List[dict] = field(default_factory=list)
    pages: int = 0
    last_successful_page: int = 0
    stop_reason: str = STOP_EXHAUSTED
    error: Optional[str] = None

    @property
    def truncated(self) -> bool:
        return self.stop_reason in TRUNCATING_STOPS

    def summary(self) -> dict:
        return {
            "pages": self.pages,
            "lastSuccessfulPage": self.last_successful_page,
            "truncated": self.truncated,
            "stopReason": self.stop_reason,
        }


def _items_under(key: str) -> Callable[[dict], List[Any]]:
    return lambda payload: payload.get(key) or []


def _next_link(payload: dict) -> Optional[str]:
    links = payload.get("links") or {}
    if not isinstance(links, dict):
        raise ValueError(f"Unexpected links type {type(links).__name__}")
    next_link = links.get("next") or None
    if next_link is not None and not isinstance(next_link, str):
        raise ValueError(f"Unexpected next link type {type(next_link).__name__}")
    return next_link


def collect(
    client: MirrorClient,
    query: StreamQuery,
    max_pages: Optional[int] = None,
    deadline: Optional[float] = None,
    extract_items: Optional[Callable[[dict], List[Any]]] = None,
    extract_next: Optional[Callable[[dict], Optional[str]]] = None,
    on_page: Optional[Callable[[str, int, int], None]] = None,
) -> StreamResult:
    """Follow ``links.next`` from the query's first page until the feed ends.

    Transient failures (non-2xx status, network errors, undecodable bodies)
    stop the loop and return what was accumulated, flagged as truncated.
    Failed pages are not retried.
    """

    if extract_items is None:
        extract_items = _items_under(query.results_key)
    if extract_next is None:
        extract_next = _next_link

    result = StreamResult(name=query.name)
    url: Optional[str] = client.url_for(query.path)
    params: Optional[List[Tuple[str, str]]] = list(query.params)
    started = client.clock()
    page = 0

    while url:
        if max_pages is not None and page >= max_pages:
            _LOGGER.warning("stream stop=max_pages stream=%s pages=%s", query.name, page)
            result.stop_reason = STOP_MAX_PAGES
            break
        if deadline is not None and client.clock() - started >= deadline:
            _LOGGER.warning("stream stop=deadline stream=%s pages=%s", query.name, page)
            result.stop_reason = STOP_DEADLINE
            break

        page += 1
        result.pages = page
        if on_page:
            on_page(query.name, page, len(result.records))

        try:
            response = client.get(url, params=params)
        except requests.RequestException as exc:
            _LOGGER.error("stream request failed stream=%s page=%s err=%s", query.name, page, exc)
            result.stop_reason = STOP_REQUEST_ERROR
            result.error = str(exc)
            break
        params = None

        if not 200 <= response.status_code < 300:
            _LOGGER.error(
                "stream http error stream=%s page=%s status=%s url=%s",
                query.name,
                page,
                response.status_code,
                url,
            )
            result.stop_reason = STOP_HTTP_ERROR
            result.error = f"HTTP {response.status_code}"
            break

        try:
            payload = response.json()
        except ValueError as exc:
            _LOGGER.error("stream invalid json stream=%s page=%s err=%s", query.name, page, exc)
            result.stop_reason = STOP_INVALID_RESPONSE
            result.error = str(exc)
            break
        try:
            if not isinstance(payload, dict):
                raise ValueError(f"Unexpected body type {type(payload).__name__}")
            items = extract_items(payload)
            if not isinstance(items, list):
                raise ValueError(f"Unexpected {query.results_key} type {type(items).__name__}")
            next_link = extract_next(payload)
        except ValueError as exc:
            _LOGGER.error("stream unexpected body stream=%s page=%s err=%s", query.name, page, exc)
            result.stop_reason = STOP_INVALID_RESPONSE
            result.error = str(exc)
            break
        result.last_successful_page = page

        if not items:
            _LOGGER.info("stream stop=empty_page stream=%s page=%s", query.name, page)
            result.stop_reason = STOP_EMPTY_PAGE
            break
        result.records.extend(items)

        if not next_link:
            _LOGGER.info("stream stop=exhausted stream=%s page=%s", query.name, page)
            result.stop_reason = STOP_EXHAUSTED
            break
        url = client.resolve(next_link)
        if page % NEXT_URL_LOG_EVERY == 0:
            _LOGGER.debug("stream next stream=%s page=%s url=%s", query.name, page, url)

    _LOGGER.info(
        "stream complete stream=%s records=%s pages=%s stop=%s",
        query.name,
        len(result.records),
        result.pages,
        result.stop_reason,
    )
    return result
