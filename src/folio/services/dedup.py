"""Duplicate detection: normalisation helpers and the fuzzy record match.

A candidate matches a query when:

- normalized titles are equal,
- DOIs (and ISBNs) do not conflict when both sides carry one,
- years are within one of each other when both are known,
- creators overlap on at least one normalized last name. Two empty creator
  lists count as a match; a single empty list does not.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field

from ..models import ReferenceQuery

_PUNCTUATION_RE = re.compile(r"[ !-/:-@\[-`{-~]+")
_DOI_RE = re.compile(r"10\.\d{4,9}/\S+", re.IGNORECASE)
_ISBN_CHARS_RE = re.compile(r"[^0-9Xx]")
_YEAR_RE = re.compile(r"^\s*(-?\d+)")
_DATE_YEAR_RE = re.compile(r"\b(\d{4})\b")


@dataclass
class Candidate:
    """The fields of a stored record that take part in duplicate matching."""

    title: str = ""
    year: int | None = None
    doi: str | None = None
    isbn: str | None = None
    creator_last_names: list[str] = field(default_factory=list)


def remove_diacritics(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_string(value: str | None) -> str:
    if not value:
        return ""
    return _PUNCTUATION_RE.sub(" ", remove_diacritics(str(value))).strip().lower()


def clean_doi(value: str | None) -> str | None:
    if not value:
        return None
    match = _DOI_RE.search(str(value))
    if not match:
        return None
    return match.group(0).rstrip(".,;").lower()


def _isbn10_valid(digits: str) -> bool:
    total = 0
    for i, ch in enumerate(digits):
        digit = 10 if ch in "Xx" else int(ch)
        if digit == 10 and i != 9:
            return False
        total += digit * (10 - i)
    return total % 11 == 0


def _isbn13_check_digit(first12: str) -> int:
    total = sum(int(ch) * (1 if i % 2 == 0 else 3) for i, ch in enumerate(first12))
    return (10 - total % 10) % 10


def clean_isbn(value: str | None) -> str | None:
    """Return the ISBN-13 form of a valid ISBN-10/13, or None."""
    if not value:
        return None
    digits = _ISBN_CHARS_RE.sub("", str(value))
    if len(digits) == 10:
        if not _isbn10_valid(digits):
            return None
        first12 = "978" + digits[:9]
        return first12 + str(_isbn13_check_digit(first12))
    if len(digits) == 13 and digits.isdigit():
        if _isbn13_check_digit(digits[:12]) != int(digits[12]):
            return None
        return digits
    return None


def parse_year(value: str | int | None) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, int):
        return value
    match = _YEAR_RE.match(str(value))
    return int(match.group(1)) if match else None


def year_from_date(value: str | None) -> int | None:
    """Pull a four-digit year out of a free-form date string."""
    if not value:
        return None
    match = _DATE_YEAR_RE.search(str(value))
    if match:
        return int(match.group(1))
    return parse_year(value)


def extract_last_name(name: str) -> str:
    name = name.strip()
    if not name:
        return ""
    if "," in name:
        return name.split(",", 1)[0].strip()
    return name.split()[-1]


def matches(query: ReferenceQuery, candidate: Candidate) -> bool:
    normalized_title = normalize_string(query.title)
    if not normalized_title or normalize_string(candidate.title) != normalized_title:
        return False

    query_doi = clean_doi(query.doi)
    candidate_doi = clean_doi(candidate.doi)
    if query_doi and candidate_doi and query_doi != candidate_doi:
        return False

    query_isbn = clean_isbn(query.isbn)
    candidate_isbn = clean_isbn(candidate.isbn)
    if query_isbn and candidate_isbn and query_isbn != candidate_isbn:
        return False

    query_year = year_from_date(query.date)
    if query_year and candidate.year and abs(query_year - candidate.year) > 1:
        return False

    if not query.creators and not candidate.creator_last_names:
        return True
    if not query.creators or not candidate.creator_last_names:
        return False

    candidate_names = {normalize_string(n) for n in candidate.creator_last_names}
    candidate_names.discard("")
    for creator in query.creators:
        last = normalize_string(creator)
        if last and last in candidate_names:
            return True
    return False


def query_from_reference(reference) -> ReferenceQuery:
    """Build a structured search query from an ``ExternalReference``."""
    return ReferenceQuery(
        title=reference.title,
        date=reference.date,
        doi=reference.identifiers.doi,
        isbn=reference.identifiers.isbn,
        creators=[extract_last_name(a) for a in reference.authors if a and a.strip()],
    )
