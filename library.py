"""
The in-memory library: every readable .epub in one directory, keyed by filename.
"""

import logging
import os
from types import MappingProxyType
from typing import Callable, Dict, Iterator, List, Mapping, NamedTuple, Optional

from epubshelf import (
    BookNotFound,
    EpubDocument,
    LibraryDirectoryError,
    LoadError,
    load_epub,
)

logger = logging.getLogger(__name__)


class BookSummary(NamedTuple):
    book_key: str
    title: str
    cover_resource_path: Optional[str]


class LibraryIndex:
    """
    Read-only snapshot of loaded documents.

    The mapping is frozen when the index is built and documents are
    immutable, so request handlers can read it from any thread without a lock.
    """

    def __init__(self, documents: Optional[Mapping[str, EpubDocument]] = None):
        self._documents: Mapping[str, EpubDocument] = MappingProxyType(dict(documents or {}))

    @classmethod
    def load_all(
        cls,
        directory: str,
        loader: Callable[[str], EpubDocument] = load_epub,
    ) -> 'LibraryIndex':
        """
        Loads every .epub file in `directory`. Files that fail to load are
        logged and left out. Raises LibraryDirectoryError when the directory
        itself cannot be listed.
        """
        try:
            names = sorted(os.listdir(directory))
        except OSError as e:
            raise LibraryDirectoryError(directory, e.strerror or str(e)) from e

        documents: Dict[str, EpubDocument] = {}
        skipped = 0
        for name in names:
            if not name.lower().endswith('.epub'):
                continue
            path = os.path.join(directory, name)
            if not os.path.isfile(path):
                continue
            try:
                document = loader(path)
            except LoadError as e:
                skipped += 1
                logger.warning("Skipping %s: %s", name, e.reason)
                continue
            documents[document.book_key] = document

        logger.info("Library ready: %d book(s) loaded, %d skipped from %s",
                    len(documents), skipped, os.path.abspath(directory))
        return cls(documents)

    def get(self, book_key: str) -> EpubDocument:
        try:
            return self._documents[book_key]
        except KeyError:
            raise BookNotFound(book_key) from None

    def list_all(self) -> List[BookSummary]:
        """Books ordered by case-insensitive title, then by key."""
        documents = sorted(
            self._documents.values(),
            key=lambda doc: (doc.title.casefold(), doc.book_key)
        )
        return [
            BookSummary(doc.book_key, doc.title, doc.cover_resource_path)
            for doc in documents
        ]

    def keys(self) -> List[str]:
        return sorted(self._documents)

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, book_key) -> bool:
        return book_key in self._documents

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())
