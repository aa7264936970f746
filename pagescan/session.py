"""
Page session: the ordered, mutable set of pages of the document being scanned.

Writers are serialized by a lock and publish a brand-new tuple of frozen
pages on every change; readers grab whatever tuple is current. A snapshot is
therefore always a consistent point-in-time view and never aliases state a
later mutation can touch.
"""

import dataclasses
import logging
import threading
from typing import Optional, Tuple

from .errors import InvalidOrdinal, UnknownPageId
from .imaging import thumbnail_bytes
from .models import ExportFormat, Page, RectifiedPage, SessionState

logger = logging.getLogger(__name__)


def _renumber(pages) -> Tuple[Page, ...]:
    return tuple(
        p if p.ordinal == i else dataclasses.replace(p, ordinal=i)
        for i, p in enumerate(pages)
    )


class PageSession:
    """Single-writer / multi-reader aggregate of session pages."""

    def __init__(self, profile: str = "text", export_format: ExportFormat = ExportFormat.PDF):
        self._lock = threading.Lock()
        self._pages: Tuple[Page, ...] = ()
        self._next_id = 1
        self._state = SessionState.EMPTY
        self.active_profile = profile
        self.export_format = ExportFormat.parse(export_format)

    @property
    def state(self) -> SessionState:
        return self._state

    def __len__(self) -> int:
        return len(self._pages)

    def snapshot(self) -> Tuple[Page, ...]:
        """Read-only, ordered copy of the pages."""
        return self._pages

    def get(self, page_id: int) -> Page:
        for page in self._pages:
            if page.id == page_id:
                return page
        raise UnknownPageId(page_id)

    def find(self, page_id: Optional[int]) -> Optional[Page]:
        """Like get(), but None for ids that are no longer in the session."""
        for page in self._pages:
            if page.id == page_id:
                return page
        return None

    def add_page(self, page: RectifiedPage, profile: Optional[str] = None) -> Page:
        """Append a page with the next ordinal and a fresh id."""
        thumb = thumbnail_bytes(page.image)
        with self._lock:
            new_page = Page(
                id=self._next_id,
                ordinal=len(self._pages),
                page=page,
                profile_name=profile or self.active_profile,
                thumbnail=thumb,
            )
            self._next_id += 1
            self._pages = self._pages + (new_page,)
            self._state = SessionState.ACTIVE
        logger.info(f"Added page {new_page.id} at position {new_page.ordinal}")
        return new_page

    def retake(self, page_id: int, page: RectifiedPage, profile: Optional[str] = None) -> Page:
        """Replace a page's raster in place; id and ordinal are kept."""
        thumb = thumbnail_bytes(page.image)
        with self._lock:
            index = self._index(page_id)
            old = self._pages[index]
            replaced = dataclasses.replace(
                old,
                page=page,
                profile_name=profile or old.profile_name,
                thumbnail=thumb,
            )
            pages = list(self._pages)
            pages[index] = replaced
            self._pages = tuple(pages)
        logger.info(f"Retook page {page_id}")
        return replaced

    def reorder(self, page_id: int, new_ordinal: int) -> Tuple[Page, ...]:
        """Move a page to ``new_ordinal``; the others shift to stay dense."""
        with self._lock:
            count = len(self._pages)
            index = self._index(page_id)
            if not 0 <= new_ordinal < count:
                raise InvalidOrdinal(new_ordinal, count)
            pages = list(self._pages)
            moved = pages.pop(index)
            pages.insert(new_ordinal, moved)
            self._pages = _renumber(pages)
            result = self._pages
        logger.info(f"Moved page {page_id} from {index} to {new_ordinal}")
        return result

    def delete(self, page_id: int) -> Tuple[Page, ...]:
        """Remove a page and close the gap in ordinals."""
        with self._lock:
            index = self._index(page_id)
            pages = list(self._pages)
            del pages[index]
            self._pages = _renumber(pages)
            if not self._pages:
                self._state = SessionState.EMPTY
            result = self._pages
        logger.info(f"Deleted page {page_id}")
        return result

    def discard(self) -> None:
        """Drop every page (user abandoned the document)."""
        with self._lock:
            self._pages = ()
            self._state = SessionState.EMPTY
        logger.info("Session discarded")

    def mark_exported(self, exported: Optional[Tuple[Page, ...]] = None) -> bool:
        """Close the export cycle; the next add_page starts a new document.

        Args:
            exported: The snapshot that was exported. When given, the session
                is only cleared if nothing changed since that snapshot.

        Returns:
            True if the session was cleared.
        """
        with self._lock:
            if exported is not None and exported is not self._pages:
                logger.info("Session changed during export; keeping its pages")
                return False
            self._pages = ()
            self._state = SessionState.EXPORTED
        logger.info("Session exported and cleared")
        return True

    def _index(self, page_id: int) -> int:
        for i, page in enumerate(self._pages):
            if page.id == page_id:
                return i
        raise UnknownPageId(page_id)
