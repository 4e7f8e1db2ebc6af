"""Normalization functions for scraped lifter result rows.

All functions accept str | None and return the appropriate type or None.
None always means "unknown"; a value that cannot be parsed is also None
unless the function documents that it raises.
"""

from __future__ import annotations

import re
from datetime import date, datetime

_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%b %d, %Y", "%d %b %Y")

MIN_BIRTH_YEAR = 1900
MAX_BIRTH_YEAR = 2100


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: parse_int
# ---------------------------------------------------------------------------

def parse_int(value: str | None) -> int | None:
    """Parse an integer, tolerating a trailing '.0' left by spreadsheet exports."""
    v = trim(value)
    if v is None:
        return None
    if v.endswith(".0"):
        v = v[:-2]
    try:
        return int(v)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Rule 4: parse_external_id
# ---------------------------------------------------------------------------

_MEMBER_URL_RE = re.compile(r"/member/(\d+)")


def parse_external_id(value: str | None) -> int | None:
    """Return a positive external profile id.

    Accepts a bare number ("38184") or a profile URL containing
    /member/<id> (Sport80 rankings member pages).  Zero and negative
    numbers are not valid ids and return None.
    """
    v = trim(value)
    if v is None:
        return None
    m = _MEMBER_URL_RE.search(v)
    if m:
        v = m.group(1)
    n = parse_int(v)
    if n is None or n <= 0:
        return None
    return n


# ---------------------------------------------------------------------------
# Rule 5: parse_birth_year
# ---------------------------------------------------------------------------

def parse_birth_year(value: str | None) -> int | None:
    """Parse a four-digit birth year within [MIN_BIRTH_YEAR, MAX_BIRTH_YEAR]."""
    n = parse_int(value)
    if n is None or not (MIN_BIRTH_YEAR <= n <= MAX_BIRTH_YEAR):
        return None
    return n


# ---------------------------------------------------------------------------
# Rule 6: normalize_country_code
# ---------------------------------------------------------------------------

def normalize_country_code(value: str | None) -> str | None:
    """Uppercase a country code and strip surrounding parentheses.

    IWF result pages render the nation as "(ARM)" in some layouts.
    """
    v = trim(value)
    if v is None:
        return None
    v = v.strip("()").strip().upper()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 7: parse_date
# ---------------------------------------------------------------------------

def parse_date(value: str | None) -> date | None:
    """Parse a competition date in any of the formats the scrapers emit.

    '2024-03-09', '03/09/2024', 'Mar 09, 2024' and '09 Mar 2024' are accepted.
    """
    v = normalize_space(value)
    if v is None:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(v, fmt).date()
        except ValueError:
            continue
    return None


# ---------------------------------------------------------------------------
# Caller-side pre-processing: IWF name order
# ---------------------------------------------------------------------------

_SUFFIX_RE = re.compile(
    r"\s+(Jr\.?|Sr\.?|II|III|IV|V|VI|VII|VIII|IX|X|XI|XII)(?=\s|$)",
    re.IGNORECASE,
)
_LEAKED_COUNTRY_RE = re.compile(r"\s+\(?[A-Z]{3}\)?$")


def reorder_iwf_name(value: str | None) -> str | None:
    """Convert IWF "LASTNAME Given" order to "Given LASTNAME".

    "WANG Hao"               → "Hao WANG"
    "FELIX DA SILVA Thiago"  → "Thiago FELIX DA SILVA"
    "AGAD Fernando Jr"       → "Fernando AGAD Jr"

    The surname is the leading run of all-caps words longer than one
    character, or the first word alone when it mixes case with more than
    one capital (AlQAHTANI, McDONALD).  Names already in "Given Last" order
    come back unchanged.
    A trailing 3-letter country code leaked from extraction ("WANG Hao CHN")
    is dropped.
    This is an explicit pre-processing step for IWF sources; the resolver
    itself never reorders names.
    """
    v = normalize_space(value)
    if v is None:
        return None

    suffix = None
    m = _SUFFIX_RE.search(v)
    if m:
        suffix = m.group(1).rstrip(".")
        v = normalize_space(v[:m.start()] + v[m.end():]) or ""

    parts = v.split(" ")
    if len(parts) > 2:
        v = _LEAKED_COUNTRY_RE.sub("", v).strip()
        parts = v.split(" ") if v else []
    if not parts:
        return None

    first = parts[0]
    if sum(c.isupper() for c in first) >= 2 and any(c.islower() for c in first):
        surname_end = 1
    else:
        surname_end = 0
        for word in parts:
            if word.upper() == word and len(word) > 1:
                surname_end += 1
            else:
                break

    if 0 < surname_end < len(parts):
        parts = parts[surname_end:] + parts[:surname_end]

    out = " ".join(parts)
    if suffix:
        out = f"{out} {suffix}"
    return out
