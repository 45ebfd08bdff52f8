"""Data models for Madrid public library loan tracking."""

import re
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional


def normalize_title(title: str) -> str:
    """
    Normalize a title into the identity key used to match books.

    Only surrounding whitespace and letter case are ignored; punctuation,
    accents and inner spacing still count.

    Examples:
        "  Don Quijote  " -> "don quijote"
        "LA OVEJITA VA AL COLE" -> "la ovejita va al cole"
    """
    return title.strip().lower()


def slugify_title(title: str) -> str:
    """
    Turn a title into a filesystem-safe slug for cover image file names.

    Examples:
        "Don Quijote de la Mancha" -> "don-quijote-de-la-mancha"
        "¿Dónde está Wally?" -> "donde-esta-wally"
    """
    ascii_title = (
        unicodedata.normalize("NFKD", title)
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    slug = re.sub(r"[^a-z0-9]+", "-", ascii_title.lower()).strip("-")
    return slug or "untitled"


@dataclass
class LoanRecord:
    """A book the account has borrowed at some point."""

    title: str
    first_seen: datetime
    author: Optional[str] = None
    collection: Optional[str] = None  # "Colección" / series name
    cover_ref: Optional[str] = None  # local path or URL of the cover image
    due_date: Optional[date] = None

    def title_key(self) -> str:
        """Return the normalized title used as this record's identity."""
        return normalize_title(self.title)

    def __str__(self) -> str:
        due_str = f" (due: {self.due_date})" if self.due_date else ""
        author_str = f" by {self.author}" if self.author else ""
        return f"{self.title}{author_str}{due_str}"


@dataclass
class BookDetails:
    """Metadata scraped from a title's detail page."""

    author: Optional[str] = None
    collection: Optional[str] = None
    cover_url: Optional[str] = None


@dataclass
class LoanItem:
    """A row of the loans page before detail lookup."""

    title: str
    due_date: Optional[date] = None
    detail_url: Optional[str] = None
