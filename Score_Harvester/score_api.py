"""
Client for the remote accumulate-ranking endpoint.

The remote pages a ranking list per scope: type=1 is the caller's department,
type=0 the whole organization. Rows carry at least `PersonName` and `AllCount`.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional, Protocol
from urllib.parse import quote

import requests

from utils.name_match import names_match
from utils.schemas import DiscoveredUser

RANKING_ENDPOINT = "/ArchiveManger/D_PersonAccumulate/GetAccumulateRankingListOne"

SCOPE_DEPARTMENT = 1
SCOPE_ORGANIZATION = 0
# lookups try the narrow pool first; discovery walks both in this order, so the
# organization row wins when the same display name shows up in both
SCOPES = (SCOPE_DEPARTMENT, SCOPE_ORGANIZATION)

MAX_EMPTY_PAGES = 3
PAGE_PAUSE_SECONDS = 0.1

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

logger = logging.getLogger("score-api")


class ScoreApiError(Exception):
    """The remote answered with a non-success HTTP status."""


class ScoreSource(Protocol):
    def lookup_score(self, name: str, begin: str, end: str) -> int: ...

    def discover_roster(self, date: str) -> list[DiscoveredUser]: ...


def encode_param(value: str) -> str:
    """
    Obfuscate a parameter the way the remote front-end does: the decimal character
    codes concatenated, '^', then the comma-joined digit count of each code,
    percent-encoded as a whole.
    """
    if not value:
        return ""
    codes = [str(ord(ch)) for ch in value]
    lengths = ",".join(str(len(c)) for c in codes)
    return quote("".join(codes) + "^" + lengths, safe="")


def parse_count(value: Any) -> Optional[int]:
    """`AllCount` as an int; None when the remote sent something unusable."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _rows(payload: Any) -> Optional[list]:
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        return payload["data"]
    return None


class RemoteScoreClient:
    def __init__(
        self,
        config,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = config.api_base_url.rstrip("/")
        self.person_id = config.person_id
        self.cookie = config.cookie
        self.page_size = config.page_size
        self.max_page = config.max_page
        self.max_retries = config.max_retries
        self.timeout = config.request_timeout
        self.discover_page_size = config.discover_page_size
        self.max_discover_pages = config.max_discover_pages
        self.session = session or requests.Session()
        self._sleep = sleep

    # ---------- transport ----------
    def _post(self, endpoint: str, data: dict) -> Any:
        """
        POST with retry: up to `max_retries` extra attempts, sleeping attempt * 1s
        between them. The last attempt's error propagates.
        """
        url = f"{self.base_url}{endpoint}"
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Cookie": self.cookie,
            "User-Agent": USER_AGENT,
            "X-Requested-With": "XMLHttpRequest",
        }
        attempt = 0
        while True:
            try:
                resp = self.session.post(url, data=data, headers=headers, timeout=self.timeout)
                if resp.status_code != 200:
                    raise ScoreApiError(f"HTTP {resp.status_code}")
            except (requests.RequestException, ScoreApiError) as e:
                if attempt >= self.max_retries:
                    raise
                attempt += 1
                logger.warning(
                    "[ScoreAPI] Request failed, retry %d/%d: %s", attempt, self.max_retries, e
                )
                self._sleep(attempt * 1.0)
                continue

            try:
                return resp.json()
            except ValueError:
                logger.warning("[ScoreAPI] Non-JSON response from %s: %r", endpoint, resp.text[:200])
                return None

    def _ranking_page(self, scope: int, page: int, rows: int, begin: str, end: str) -> Any:
        return self._post(
            RANKING_ENDPOINT,
            {
                "pid": encode_param(self.person_id),
                "page": page,
                "rows": rows,
                "begin": encode_param(begin),
                "end": encode_param(end),
                "type": scope,
            },
        )

    # ---------- lookup ----------
    def _query_scope(self, name: str, scope: int, begin: str, end: str) -> int:
        for page in range(1, self.max_page + 1):
            rows = _rows(self._ranking_page(scope, page, self.page_size, begin, end))
            if rows is None:
                return 0

            match = next(
                (r for r in rows if isinstance(r, dict) and names_match(name, r.get("PersonName"))),
                None,
            )
            if match is not None:
                score = parse_count(match.get("AllCount"))
                if score is None:
                    raise ScoreApiError(
                        f"Unusable AllCount {match.get('AllCount')!r} for {match.get('PersonName')!r}"
                    )
                logger.debug(
                    "[ScoreAPI] Found %s as %r (type=%d, page=%d): %d",
                    name,
                    match.get("PersonName"),
                    scope,
                    page,
                    score,
                )
                return score

            if len(rows) < self.page_size:
                break
            self._sleep(PAGE_PAUSE_SECONDS)
        return 0

    def lookup_score(self, name: str, begin: str, end: str) -> int:
        """
        Accumulated score of `name` between `begin` and `end` (YYYY-MM-DD).

        Department scope first, organization scope only if that gave 0. A 0 result is
        indistinguishable from "not found"; callers keep it as a real score.
        """
        score = 0
        for scope in SCOPES:
            score = self._query_scope(name, scope, begin, end)
            if score > 0:
                break
        return score

    # ---------- discovery ----------
    def _discover_scope(self, scope: int, date: str, roster: dict[str, DiscoveredUser]) -> int:
        pages = 0
        empty_streak = 0
        for page in range(1, self.max_discover_pages + 1):
            try:
                payload = self._ranking_page(scope, page, self.discover_page_size, date, date)
            except (requests.RequestException, ScoreApiError) as e:
                logger.error("[Discovery] type=%d page %d failed, abandoning scope: %s", scope, page, e)
                break
            pages += 1

            rows = _rows(payload) or []
            if not rows:
                empty_streak += 1
                if empty_streak >= MAX_EMPTY_PAGES:
                    logger.info("[Discovery] type=%d: %d empty pages in a row, stopping", scope, empty_streak)
                    break
                continue
            empty_streak = 0

            for row in rows:
                if not isinstance(row, dict):
                    continue
                name = str(row.get("PersonName") or "").strip()
                if not name:
                    continue
                score = parse_count(row.get("AllCount"))
                if score is None:
                    logger.warning("[Discovery] Skipping %s: unusable AllCount %r", name, row.get("AllCount"))
                    continue
                person_id = row.get("PersonId") or row.get("PersonID") or row.get("Pid")
                dept = row.get("DeptName") or row.get("UnitName")
                roster[name] = DiscoveredUser(
                    name=name,
                    remote_person_id=str(person_id) if person_id is not None else None,
                    department=str(dept) if dept else None,
                    score=score,
                )

            if len(rows) < self.discover_page_size:
                break
            self._sleep(PAGE_PAUSE_SECONDS)
        return pages

    def discover_roster(self, date: str) -> list[DiscoveredUser]:
        """
        Every scored identity for `date`, across both scopes.

        Duplicate display names keep the last row processed. A failing page only ends
        its own scope.
        """
        roster: dict[str, DiscoveredUser] = {}
        for scope in SCOPES:
            pages = self._discover_scope(scope, date, roster)
            logger.info("[Discovery] type=%d: %d page(s), %d unique names so far", scope, pages, len(roster))
        return list(roster.values())
