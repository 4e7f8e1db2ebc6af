"""lifter_etl.verification

External Verification Source: asks the federation rankings site whether a
name + competition context resolves to a single member profile.

Sport80Verifier fetches the public rankings page for a date window around
the competition date (optionally narrowed to a weight class) and reads the
member id of every row whose athlete name matches.  Plain HTTP only; the
rankings page must be served with its table in the initial HTML.

Outcome mapping:
  one distinct member id           → found
  zero, or several distinct ids    → not_found
  transport error / timeout / 429 / 5xx / non-200 → unavailable
"""

from __future__ import annotations

import base64
import json
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol
from urllib.parse import quote, urljoin

import requests
from bs4 import BeautifulSoup

from lifter_etl.normalize import normalize_space
from lifter_etl.shared import CompetitionContext

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://usaweightlifting.sport80.com"
RANKINGS_PATH = "/public/rankings/all"
USER_AGENT = "lifter-etl/0.1 (identity verification)"

FOUND = "found"
NOT_FOUND = "not_found"
UNAVAILABLE = "unavailable"

_MEMBER_ID_RE = re.compile(r"/member/(\d+)")


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VerificationResult:
    status: str
    external_id: int | None = None
    detail: str = ""

    @classmethod
    def found(cls, external_id: int, detail: str = "") -> VerificationResult:
        return cls(FOUND, external_id, detail)

    @classmethod
    def not_found(cls, detail: str = "") -> VerificationResult:
        return cls(NOT_FOUND, None, detail)

    @classmethod
    def unavailable(cls, detail: str = "") -> VerificationResult:
        return cls(UNAVAILABLE, None, detail)

    @property
    def is_found(self) -> bool:
        return self.status == FOUND


class Verifier(Protocol):
    def verify(self, name: str, context: CompetitionContext) -> VerificationResult:
        """May raise VerificationUnavailableError instead of returning unavailable."""
        ...


# ---------------------------------------------------------------------------
# URL + HTML helpers
# ---------------------------------------------------------------------------

def build_rankings_url(
    base_url: str,
    date_range_start: str,
    date_range_end: str,
    weight_class: str | None = None,
) -> str:
    """Rankings URL with the base64-encoded JSON filter the site expects.

    >>> build_rankings_url("https://x", "2017-01-08", "2017-01-18")
    'https://x/public/rankings/all?filters=eyJkYXRlX3JhbmdlX3N0YXJ0IjogIjIwMTctMDEtMDgiLCAiZGF0ZV9yYW5nZV9lbmQiOiAiMjAxNy0wMS0xOCJ9'
    """
    filters: dict[str, object] = {
        "date_range_start": date_range_start,
        "date_range_end": date_range_end,
    }
    if weight_class:
        filters["weight_class"] = int(weight_class) if weight_class.isdigit() else weight_class
    encoded = base64.b64encode(json.dumps(filters).encode("utf-8")).decode("ascii")
    return f"{base_url.rstrip('/')}{RANKINGS_PATH}?filters={quote(encoded, safe='')}"


def _name_key(value: str | None) -> str:
    return (normalize_space(value) or "").casefold()


def _athlete_column(headers: list[str]) -> int:
    for i, h in enumerate(headers):
        if "athlete" in h or ("lifter" in h and "age" not in h):
            return i
    return 0


def _row_member_id(tr, page_url: str) -> int | None:
    candidates = [a.get("href", "") for a in tr.find_all("a", href=True)]
    candidates.append(tr.get("data-href") or "")
    for href in candidates:
        m = _MEMBER_ID_RE.search(urljoin(page_url, href))
        if m:
            return int(m.group(1))
    return None


def parse_rankings_rows(html: str, page_url: str = "") -> list[tuple[str, int | None]]:
    """Return (athlete_name, member_id) for each body row of the rankings table.

    The athlete column is found from the header text; without a usable
    header the first cell is taken.  member_id is None when the row
    carries no /member/<id> link.
    """
    soup = BeautifulSoup(html, "html.parser")
    table = soup.find("table")
    if table is None:
        return []

    headers = [th.get_text(" ", strip=True).lower() for th in table.find_all("th")]
    col = _athlete_column(headers)

    body = table.find("tbody") or table
    rows: list[tuple[str, int | None]] = []
    for tr in body.find_all("tr"):
        cells = tr.find_all("td")
        if len(cells) <= col:
            continue
        name = normalize_space(cells[col].get_text(" ", strip=True))
        if not name:
            continue
        rows.append((name, _row_member_id(tr, page_url)))
    return rows


# ---------------------------------------------------------------------------
# Sport80 implementation
# ---------------------------------------------------------------------------

class Sport80Verifier:
    """Verification against the Sport80 public rankings pages."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30,
        session: requests.Session | None = None,
        date_window_before_days: int = 3,
        date_window_after_days: int = 10,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self.date_window_before_days = date_window_before_days
        self.date_window_after_days = date_window_after_days
        if session is None:
            session = requests.Session()
            session.headers.update({"User-Agent": USER_AGENT})
        self._session = session

    def rankings_url(self, context: CompetitionContext) -> str | None:
        if context.date is None:
            return None
        start = context.date - timedelta(days=self.date_window_before_days)
        end = context.date + timedelta(days=self.date_window_after_days)
        return build_rankings_url(
            self.base_url, start.isoformat(), end.isoformat(), context.weight_class
        )

    def verify(self, name: str, context: CompetitionContext) -> VerificationResult:
        url = self.rankings_url(context)
        if url is None:
            return VerificationResult.not_found("no competition date to search")

        try:
            resp = self._session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            log.warning("Sport80 request failed for %r: %s", name, exc)
            return VerificationResult.unavailable(f"transport: {exc}")

        if resp.status_code in (429,) or resp.status_code >= 500:
            log.warning("Sport80 returned %s for %r", resp.status_code, name)
            return VerificationResult.unavailable(f"http {resp.status_code}")
        if resp.status_code != 200:
            log.warning("Sport80 returned unexpected status %s", resp.status_code)
            return VerificationResult.unavailable(f"http {resp.status_code}")

        target = _name_key(name)
        ids = sorted({
            member_id
            for row_name, member_id in parse_rankings_rows(resp.text, url)
            if member_id is not None and _name_key(row_name) == target
        })

        if len(ids) == 1:
            return VerificationResult.found(ids[0], f"rankings {url}")
        if not ids:
            return VerificationResult.not_found("no matching rankings row")
        log.info("Sport80 rankings ambiguous for %r: member ids %s", name, ids)
        return VerificationResult.not_found(f"ambiguous member ids {ids}")
