"""Client for the Madrid public library network reader portal (AbsysNet OPAC)."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import unicodedata
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from biblio_madrid_client.models import BookDetails, LoanItem, LoanRecord, normalize_title, slugify_title

logger = logging.getLogger(__name__)


class LibraryClientError(Exception):
    """Base exception for library client errors."""
    pass


class LoginError(LibraryClientError):
    """Raised when login fails."""
    pass


class SessionExpiredError(LibraryClientError):
    """Raised when the session has expired."""
    pass


def parse_due_date(raw_text: Optional[str]) -> Optional[date]:
    """Parse the due date shown next to a loan.

    Handles formats like:
    - "Fecha de devolución: 26/02/2026"
    - "26/02/2026"
    - "Devolver antes de: 26/02/2026 (renovable)"
    """
    if not raw_text or not raw_text.strip():
        return None

    parts = raw_text.split(":", 1)
    date_part = parts[1].strip() if len(parts) > 1 else raw_text.strip()
    date_part = date_part[:10]

    try:
        return datetime.strptime(date_part, "%d/%m/%Y").date()
    except ValueError:
        return None


def _label_key(text: str) -> str:
    """Reduce a field label like "Colección:" to "coleccion"."""
    ascii_text = (
        unicodedata.normalize("NFKD", text)
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    return ascii_text.strip().rstrip(":").strip().lower()


def _clean(text: Optional[str]) -> Optional[str]:
    """Collapse inner whitespace; empty strings become None."""
    if text is None:
        return None
    cleaned = " ".join(text.split())
    return cleaned or None


class MadridLibraryClient:
    """
    Async client for the Madrid regional public library reader portal.

    This client manages an HTTP session and provides async methods to:
    - Login with the reader card number and PIN
    - Get currently borrowed books and their due dates
    - Look up author, collection and cover on a title's detail page
    - Download cover images

    The portal is an AbsysNet OPAC: every page after login lives under a
    session-specific URL ending in ``/NT<n>``.

    Example:
        >>> async with MadridLibraryClient("card_number", "pin") as client:
        ...     await client.login()
        ...     for book in await client.get_loans():
        ...         print(book)

    Using environment variables:
        >>> import os
        >>> os.environ["LIBRARY_USERNAME"] = "card_number"
        >>> os.environ["LIBRARY_PASSWORD"] = "pin"
        >>> async with MadridLibraryClient() as client:
        ...     await client.login()  # Uses environment variables
        ...     snapshot = await client.scrape_snapshot()
    """

    BASE_URL = "https://gestiona3.madrid.org/biblio_publicas/"

    # Reader area page listing current loans
    LOANS_PAGE = "NT1?ACC=210"

    COVER_HINTS = ("portada", "cubierta", "cover", "caratula")

    def __init__(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the library client.

        Args:
            username: Reader card number. If not provided, uses LIBRARY_USERNAME env var.
            password: Reader PIN. If not provided, uses LIBRARY_PASSWORD env var.
            base_url: Portal landing page. Defaults to the Madrid public libraries portal.
            transport: Optional httpx transport, used to stub the portal in tests.
        """
        self.base_url = base_url or self.BASE_URL

        self._username = username or os.environ.get("LIBRARY_USERNAME", "")
        self._password = password or os.environ.get("LIBRARY_PASSWORD", "")

        self._session_base: Optional[str] = None

        self._client = httpx.AsyncClient(
            follow_redirects=True,
            timeout=30.0,
            transport=transport,
            headers={
                "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
                "Accept-Language": "es-ES,es;q=0.9,en-US;q=0.8,en;q=0.7",
            },
        )

    async def __aenter__(self) -> "MadridLibraryClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    @property
    def is_logged_in(self) -> bool:
        """Check if the client is logged in."""
        return self._session_base is not None

    def _find_login_form(self, html: str, page_url: str) -> Optional[tuple[str, dict, str, str]]:
        """Locate the reader login form and collect its fields.

        Returns:
            Tuple of (action URL, hidden form data, username field name,
            password field name), or None if the page has no reader login form.
        """
        soup = BeautifulSoup(html, "lxml")

        user_input = soup.find("input", id="leid") or soup.find("input", attrs={"name": "leid"})
        if not user_input:
            return None

        form = user_input.find_parent("form")
        if not form:
            return None

        form_data = {}
        for inp in form.find_all("input", {"type": "hidden"}):
            name = inp.get("name")
            if name:
                form_data[name] = inp.get("value", "")

        pass_input = form.find("input", id="lepass") or form.find("input", attrs={"name": "lepass"})
        user_field = user_input.get("name") or "leid"
        pass_field = (pass_input.get("name") if pass_input else None) or "lepass"

        action = urljoin(page_url, form.get("action") or page_url)
        return action, form_data, user_field, pass_field

    async def _locate_login_form(self) -> tuple[str, dict, str, str]:
        """Find the login form on the landing page or inside one of its frames."""
        response = await self._client.get(self.base_url)
        response.raise_for_status()

        page_url = str(response.url)
        found = self._find_login_form(response.text, page_url)
        if found:
            return found

        # The login box is usually loaded into an iframe
        soup = BeautifulSoup(response.text, "lxml")
        for frame in soup.find_all("iframe", src=True):
            frame_url = urljoin(page_url, frame["src"])
            frame_response = await self._client.get(frame_url)
            if frame_response.status_code != 200:
                continue
            found = self._find_login_form(frame_response.text, str(frame_response.url))
            if found:
                return found

        raise LoginError("Login failed: reader login form not found on the portal")

    async def login(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> bool:
        """
        Login to the reader area.

        Args:
            username: Reader card number. Uses stored value if not provided.
            password: Reader PIN. Uses stored value if not provided.

        Returns:
            True if login was successful.

        Raises:
            LoginError: If login fails.
        """
        username = username or self._username
        password = password or self._password

        if not username or not password:
            raise LoginError("Username and password are required")

        action, form_data, user_field, pass_field = await self._locate_login_form()
        form_data[user_field] = username
        form_data[pass_field] = password

        response = await self._client.post(action, data=form_data)
        response.raise_for_status()

        soup = BeautifulSoup(response.text, "lxml")

        # The login box (#abnopid) is still there when credentials were rejected
        if soup.select_one("#abnopid"):
            error_msg = soup.select_one(".msgError, .error, .alert-danger")
            if error_msg and error_msg.get_text(strip=True):
                raise LoginError(f"Login failed: {error_msg.get_text(strip=True)}")
            raise LoginError("Login failed: credentials may be incorrect")

        current_url = str(response.url)
        if "/NT" in current_url:
            self._session_base = current_url.split("/NT")[0]
        else:
            self._session_base = current_url.split("?")[0].split("#")[0].rstrip("/")

        self._username = username
        self._password = password
        logger.debug("Logged in, session base %s", self._session_base)
        return True

    def _ensure_logged_in(self) -> str:
        """Return the session base URL, raising an error if not logged in."""
        if self._session_base is None:
            raise LibraryClientError("Not logged in. Call login() first.")
        return self._session_base

    async def get_loan_items(self) -> list[LoanItem]:
        """
        Get the raw rows of the current loans page.

        Raises:
            LibraryClientError: If not logged in.
            SessionExpiredError: If the session has expired.
        """
        session_base = self._ensure_logged_in()

        response = await self._client.get(f"{session_base}/{self.LOANS_PAGE}")
        response.raise_for_status()

        soup = BeautifulSoup(response.text, "lxml")
        if soup.select_one("#abnopid"):
            self._session_base = None
            raise SessionExpiredError("Session has expired. Please login again.")

        return self._parse_loans_page(response.text, str(response.url))

    async def get_loans(self) -> list[LoanRecord]:
        """
        Get the list of currently borrowed books.

        Every record is stamped with the same first_seen time (now, UTC).

        Returns:
            List of LoanRecord objects without detail-page metadata.
        """
        items = await self.get_loan_items()
        seen_at = datetime.now(timezone.utc)
        return [
            LoanRecord(title=item.title, due_date=item.due_date, first_seen=seen_at)
            for item in items
        ]

    def _parse_loans_page(self, html: str, page_url: str) -> list[LoanItem]:
        """Parse the loans page HTML.

        Each loan is an ``li`` inside ``ol.lector_box`` with:
        - h4.lector_boxTitle a span (Title, the link goes to the detail page)
        - .js-lectorPresta_xsfdev (Due date, e.g. "Fecha de devolución: 26/02/2026")
        """
        items = []
        soup = BeautifulSoup(html, "lxml")

        for entry in soup.select("ol.lector_box > li[id^='lector_box']"):
            item = self._parse_loan_entry(entry, page_url)
            if item:
                items.append(item)
            else:
                logger.warning("Skipping loan entry without a title (%s)", entry.get("id"))

        return items

    def _parse_loan_entry(self, entry, page_url: str) -> Optional[LoanItem]:
        """Parse a single loan entry."""
        title_el = entry.select_one("h4.lector_boxTitle a span") or entry.select_one("h4.lector_boxTitle a")
        title = title_el.get_text(strip=True) if title_el else ""
        if not title:
            return None

        link = entry.select_one("h4.lector_boxTitle a[href]")
        detail_url = None
        if link and not link["href"].startswith(("javascript:", "#")):
            detail_url = urljoin(page_url, link["href"])

        due_el = entry.select_one(".js-lectorPresta_xsfdev")
        due_text = due_el.get_text(strip=True) if due_el else None

        return LoanItem(
            title=title,
            due_date=parse_due_date(due_text),
            detail_url=detail_url,
        )

    async def get_book_details(self, url: str) -> BookDetails:
        """
        Get author, collection and cover from a title's detail page.

        Args:
            url: Absolute URL of the detail page.

        Returns:
            BookDetails with whatever fields the page shows.
        """
        self._ensure_logged_in()

        response = await self._client.get(url)
        response.raise_for_status()

        return self._parse_book_details(response.text, str(response.url))

    def _parse_book_details(self, html: str, page_url: str) -> BookDetails:
        """Parse a detail page.

        Fields are shown as label/value pairs, either in a definition list
        (dt/dd), in two-column table rows, or as "Label: value" text.
        """
        soup = BeautifulSoup(html, "lxml")
        values: dict[str, str] = {}

        for dt in soup.find_all("dt"):
            dd = dt.find_next_sibling("dd")
            if dd:
                values.setdefault(_label_key(dt.get_text(" ", strip=True)), dd.get_text(" ", strip=True))

        for row in soup.find_all("tr"):
            cells = row.find_all(["th", "td"])
            if len(cells) >= 2:
                values.setdefault(_label_key(cells[0].get_text(" ", strip=True)), cells[1].get_text(" ", strip=True))

        strings = list(soup.stripped_strings)
        for i, text in enumerate(strings):
            if ":" not in text:
                continue
            label, _, value = text.partition(":")
            if value.strip():
                values.setdefault(_label_key(label), value.strip())
            elif i + 1 < len(strings):
                # <b>Autor:</b> Cervantes
                values.setdefault(_label_key(label), strings[i + 1])

        author = values.get("autor") or values.get("autores") or values.get("autor principal")
        collection = values.get("coleccion") or values.get("serie")

        return BookDetails(
            author=_clean(author),
            collection=_clean(collection),
            cover_url=self._find_cover_url(soup, page_url),
        )

    def _find_cover_url(self, soup: BeautifulSoup, page_url: str) -> Optional[str]:
        """Find the cover image of a detail page."""
        for img in soup.find_all("img", src=True):
            hints = " ".join([img["src"], img.get("alt", ""), " ".join(img.get("class", []))]).lower()
            if any(hint in hints for hint in self.COVER_HINTS):
                return urljoin(page_url, img["src"])

        og_image = soup.find("meta", attrs={"property": "og:image"})
        if og_image and og_image.get("content"):
            return urljoin(page_url, og_image["content"])

        return None

    def _get_extension(self, url: str, content_type: str) -> str:
        """Determine the image file extension from URL or content type."""
        ext = Path(urlparse(url).path).suffix.lower()
        if ext in [".jpg", ".jpeg", ".png", ".gif", ".webp"]:
            return ext

        content_type_map = {
            "image/jpeg": ".jpg",
            "image/png": ".png",
            "image/gif": ".gif",
            "image/webp": ".webp",
        }
        return content_type_map.get(content_type.split(";")[0].strip(), ".jpg")

    async def download_cover(self, url: str, covers_dir: Path, title: str) -> str:
        """
        Download a cover image into covers_dir.

        The file is named after the title slug plus a short hash of the
        normalized title, so titles with the same slug (or none, as with
        non-Latin titles) never share a cover. Existing files are reused,
        so each cover is fetched once.

        Args:
            url: Cover image URL.
            covers_dir: Directory that holds cover images.
            title: Book title, used to name the file.

        Returns:
            Path of the image relative to the parent of covers_dir,
            e.g. "covers/don-quijote-1f2e3d4c.jpg".
        """
        digest = hashlib.sha1(normalize_title(title).encode("utf-8")).hexdigest()[:8]
        stem = f"{slugify_title(title)}-{digest}"
        covers_dir.mkdir(parents=True, exist_ok=True)

        for existing in covers_dir.glob(f"{stem}.*"):
            return f"{covers_dir.name}/{existing.name}"

        response = await self._client.get(url)
        response.raise_for_status()

        ext = self._get_extension(url, response.headers.get("content-type", ""))
        target = covers_dir / f"{stem}{ext}"
        await asyncio.to_thread(target.write_bytes, response.content)
        logger.info("Downloaded cover for %r to %s", title, target)
        return f"{covers_dir.name}/{target.name}"

    async def scrape_snapshot(self, covers_dir: Optional[Path] = None) -> list[LoanRecord]:
        """
        Get the currently borrowed books with their detail-page metadata.

        A failing detail page or cover download only degrades that book
        (author, collection and cover stay empty); it never aborts the scrape.

        Args:
            covers_dir: Where to store cover images. If not provided, the
                remote cover URL is kept as the cover reference.

        Returns:
            List of LoanRecord objects, all stamped with the same first_seen.
        """
        items = await self.get_loan_items()
        seen_at = datetime.now(timezone.utc)

        records = []
        for item in items:
            details = BookDetails()
            if item.detail_url:
                try:
                    details = await self.get_book_details(item.detail_url)
                except (httpx.HTTPError, LibraryClientError) as e:
                    logger.warning("Could not fetch details for %r: %s", item.title, e)

            cover_ref = details.cover_url
            if covers_dir is not None and details.cover_url:
                try:
                    cover_ref = await self.download_cover(details.cover_url, covers_dir, item.title)
                except (httpx.HTTPError, OSError) as e:
                    logger.warning("Could not download cover for %r: %s", item.title, e)
                    cover_ref = None

            records.append(LoanRecord(
                title=item.title,
                author=details.author,
                collection=details.collection,
                cover_ref=cover_ref,
                due_date=item.due_date,
                first_seen=seen_at,
            ))

        return records
