"""Decide whether a fetched page plausibly belongs to an accommodation."""

from __future__ import annotations

import re
import unicodedata
from typing import Iterable

from bs4 import BeautifulSoup

# Phrases shown by domain parkers, registrars and empty hosting templates
PARKED_DOMAIN_PHRASES: tuple[str, ...] = (
    "this domain is for sale",
    "domain is for sale",
    "buy this domain",
    "deze domeinnaam is te koop",
    "dit domein is te koop",
    "ce domaine est à vendre",
    "domain parking",
    "parked free",
    "parkingcrew",
    "sedoparking",
    "this domain has been registered",
    "website coming soon",
    "under construction",
    "default web site page",
    "welcome to nginx",
    "it works!",
)

# Words too common in venue names to identify one on their own
GENERIC_NAME_TOKENS: frozenset[str] = frozenset(
    {
        "camping",
        "camp",
        "hostel",
        "jeugdherberg",
        "youth",
        "de",
        "het",
        "van",
        "den",
        "der",
        "la",
        "le",
        "les",
        "du",
        "the",
        "and",
        "en",
        "vzw",
        "asbl",
    }
)

MIN_TOKEN_LENGTH = 3


def _fold(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    return re.sub(r"\s+", " ", stripped).strip().lower()


def significant_tokens(name: str) -> list[str]:
    tokens = re.findall(r"[a-z0-9]+", _fold(name))
    return [
        token
        for token in tokens
        if len(token) >= MIN_TOKEN_LENGTH and token not in GENERIC_NAME_TOKENS
    ]


def page_text(html: str) -> tuple[str, str]:
    """Return the folded (title, visible text) of an HTML document."""
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    title = soup.title.get_text(" ", strip=True) if soup.title else ""
    return _fold(title), _fold(soup.get_text(" ", strip=True))


def find_parked_phrase(text: str, phrases: Iterable[str] = PARKED_DOMAIN_PHRASES) -> str | None:
    for phrase in phrases:
        if _fold(phrase) in text:
            return phrase
    return None


def detect_site_match(html: str, name: str) -> tuple[bool, str | None]:
    """Check a page for the accommodation's name.

    Returns:
        Tuple of (matches, reason) where reason names the matched name or
        token, or the parked-domain phrase that disqualified the page.
    """

    if not html or not name:
        return False, None

    title, text = page_text(html)
    parked = find_parked_phrase(f"{title} {text}")
    if parked is not None:
        return False, f"parked: {parked}"

    full_name = _fold(name)
    if full_name and (full_name in title or full_name in text):
        return True, name

    for token in significant_tokens(name):
        if re.search(rf"\b{re.escape(token)}\b", title) or re.search(rf"\b{re.escape(token)}\b", text):
            return True, token
    return False, None
