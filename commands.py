"""
The command surface the reader UI talks to. Transport agnostic: the server
exposes these methods over HTTP, tests call them directly.
"""

from typing import List, NamedTuple, Optional

from epubshelf import DEFAULT_SCHEME, TableOfContents
from library import LibraryIndex
from navigation import spine_index_of, spine_item, spine_of, toc_of
from resolver import build_resource_uri

# Stands in for cover_uri when a book has no usable cover.
NO_COVER = None


class BookCover(NamedTuple):
    book_key: str
    title: str
    cover_uri: Optional[str]


class LibraryCommands:

    def __init__(self, library: LibraryIndex, scheme: str = DEFAULT_SCHEME):
        self.library = library
        self.scheme = scheme

    def list_book_covers(self) -> List[BookCover]:
        """Every book in library order, with a resource URI for its cover."""
        covers = []
        for summary in self.library.list_all():
            cover_uri = NO_COVER
            if summary.cover_resource_path:
                cover_uri = build_resource_uri(summary.book_key, summary.cover_resource_path, self.scheme)
            covers.append(BookCover(summary.book_key, summary.title, cover_uri))
        return covers

    def get_book_title(self, book_key: str) -> str:
        return self.library.get(book_key).title

    def get_toc(self, book_key: str) -> TableOfContents:
        return toc_of(self.library.get(book_key))

    def get_spine(self, book_key: str) -> List[str]:
        return list(spine_of(self.library.get(book_key)))

    def get_spine_index(self, book_key: str, content_path: str) -> Optional[int]:
        """None when the book is known but the path is not in its spine."""
        return spine_index_of(self.library.get(book_key), content_path)

    def get_spine_item(self, book_key: str, index: int) -> Optional[str]:
        return spine_item(self.library.get(book_key), index)
