"""
Storytime - In-Memory Book

Default collaborators for a reading session when the page store lives in
the client: a navigator over a fixed list of pages and a narration source
that reads each page's own audio URL.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urljoin

from ..core.errors import NavigationError, PlaybackError, SignalError
from ..core.models import NavigationResult, PageRef

logger = logging.getLogger("storytime.book")


class BookNavigator:
    """Implements NavigationProvider over an ordered list of pages."""

    def __init__(self, book_id: str, pages: Sequence[PageRef], start_index: int = 1) -> None:
        if not pages:
            raise NavigationError(f"Book {book_id!r} has no pages")
        self.book_id = book_id
        self._pages: List[PageRef] = list(pages)
        self._position = 0
        self.go_to(start_index)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "BookNavigator":
        """
        Build from a client payload:
            {"book_id": "...", "start_page": 1,
             "pages": [{"id": "...", "audio_url": "...", "title": "..."}, ...]}
        """
        raw_pages = payload.get("pages")
        if not isinstance(raw_pages, list) or not raw_pages:
            raise SignalError("Book payload needs a non-empty 'pages' list")

        total = len(raw_pages)
        pages = []
        for i, raw in enumerate(raw_pages, start=1):
            if not isinstance(raw, dict):
                raise SignalError(f"Page {i} must be an object")
            pages.append(PageRef(
                page_id=str(raw.get("id") or f"page-{i}"),
                index=i,
                total=total,
                audio_url=raw.get("audio_url") or None,
                title=str(raw.get("title", "")),
            ))

        try:
            start = int(payload.get("start_page", 1))
        except (TypeError, ValueError) as e:
            raise SignalError(f"Invalid start_page: {payload.get('start_page')!r}") from e

        book_id = str(payload.get("book_id") or "book")
        try:
            return cls(book_id, pages, start_index=start)
        except NavigationError as e:
            raise SignalError(e.reason) from e

    @property
    def current_page(self) -> PageRef:
        return self._pages[self._position]

    @property
    def page_count(self) -> int:
        return len(self._pages)

    def go_to(self, index: int) -> PageRef:
        if not 1 <= index <= len(self._pages):
            raise NavigationError(f"Page {index} is outside 1..{len(self._pages)}")
        self._position = index - 1
        return self.current_page

    async def next(self) -> Optional[NavigationResult]:
        if self._position + 1 >= len(self._pages):
            logger.info(f"Book {self.book_id}: already at last page ({len(self._pages)})")
            return None
        self._position += 1
        return self._result()

    async def previous(self) -> Optional[NavigationResult]:
        if self._position == 0:
            return None
        self._position -= 1
        return self._result()

    def _result(self) -> NavigationResult:
        page = self.current_page
        logger.info(f"Book {self.book_id}: navigated to page {page.index}/{page.total}")
        return NavigationResult(page=page, is_last_page=page.is_last)


class PageAudioSource:
    """Implements NarrationSource using the page's pre-generated audio URL."""

    def __init__(self, base_url: str = "") -> None:
        self._base_url = base_url

    async def resolve(self, page: PageRef) -> str:
        if not page.audio_url:
            raise PlaybackError(f"Page {page.index} has no narration audio")
        if self._base_url:
            return urljoin(self._base_url, page.audio_url)
        return page.audio_url
