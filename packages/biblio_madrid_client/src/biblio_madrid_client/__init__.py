"""
Biblio Madrid Client - A utility library for the Madrid public library reader portal.

This library provides functionality to:
- Login to the reader area of the Madrid regional public libraries
- Get currently borrowed books and their due dates
- Look up author, collection and cover image for each loan
"""

from biblio_madrid_client.client import (
    LibraryClientError,
    LoginError,
    MadridLibraryClient,
    SessionExpiredError,
    parse_due_date,
)
from biblio_madrid_client.models import (
    BookDetails,
    LoanItem,
    LoanRecord,
    normalize_title,
    slugify_title,
)

__all__ = [
    "MadridLibraryClient",
    "LibraryClientError",
    "LoginError",
    "SessionExpiredError",
    "parse_due_date",
    "BookDetails",
    "LoanItem",
    "LoanRecord",
    "normalize_title",
    "slugify_title",
]
