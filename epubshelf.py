"""
Loads an EPUB archive into an immutable in-memory document that the library,
the resource resolver and the navigation helpers can share between requests.
"""

import itertools
import logging
import mimetypes
import os
import posixpath
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import unquote

import ebooklib
from ebooklib import epub
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

DEFAULT_SCHEME = "epub"
NCX_MEDIA_TYPE = "application/x-dtbncx+xml"
FALLBACK_MEDIA_TYPE = "application/octet-stream"


# --- Errors ---

class ShelfError(Exception):
    """Base class for everything the content service reports to its callers."""

    @property
    def user_message(self) -> str:
        return str(self)


class LoadError(ShelfError):
    """An archive could not be turned into an EpubDocument."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{os.path.basename(path)}: {reason}")
        self.path = path
        self.reason = reason

    @property
    def user_message(self) -> str:
        return f"Could not open {os.path.basename(self.path)}"


class NotFound(ShelfError):
    """A book, resource or content path is not part of the library."""


class BookNotFound(NotFound):

    def __init__(self, book_key: str):
        super().__init__(f"Book not found: {book_key}")
        self.book_key = book_key


class ResourceNotFound(NotFound):

    def __init__(self, book_key: str, resource_path: str):
        super().__init__(f"Chapter unavailable: {resource_path}")
        self.book_key = book_key
        self.resource_path = resource_path


class InvalidUri(ShelfError):
    """A resource URI is malformed or tries to leave the archive."""

    def __init__(self, uri: str, reason: str):
        super().__init__(f"Invalid resource address: {uri}")
        self.uri = uri
        self.reason = reason


class LibraryDirectoryError(ShelfError):
    """The configured books directory cannot be listed."""

    def __init__(self, directory: str, reason: str):
        super().__init__(f"Library folder unavailable: {directory} ({reason})")
        self.directory = directory
        self.reason = reason


class ProtocolError(ShelfError, ValueError):
    """A JSON payload does not match its documented shape."""


# --- Data structures ---

@dataclass(frozen=True)
class ManifestEntry:
    id: str           # Manifest id (e.g., 'ch1')
    path: str         # Archive-relative path (e.g., 'OEBPS/ch1.html')
    mime_type: str


@dataclass(frozen=True)
class TocNode:
    """One entry of the table of contents, stored in a TableOfContents arena."""
    label: str
    content_path: str             # archive-relative, fragment kept (e.g., 'OEBPS/ch1.html#s2')
    play_order: int
    parent: Optional[int] = None  # index of the parent node, None at the top level
    children: Tuple[int, ...] = ()


@dataclass
class TocEntry:
    """Mutable entry used while a navigation document is being parsed."""
    label: str
    content_path: str
    play_order: int
    children: List['TocEntry'] = field(default_factory=list)


@dataclass(frozen=True)
class TableOfContents:
    """
    The navigation tree as a flat arena.

    Nodes are stored in depth-first reading order and refer to each other by
    index. Siblings are sorted by play order; ties keep declaration order.
    """
    nodes: Tuple[TocNode, ...] = ()
    roots: Tuple[int, ...] = ()

    @classmethod
    def from_entries(cls, entries: List[TocEntry]) -> 'TableOfContents':
        nodes: List[Optional[TocNode]] = []

        def place(level: List[TocEntry], parent: Optional[int]) -> Tuple[int, ...]:
            placed = []
            for entry in sorted(level, key=lambda e: e.play_order):
                index = len(nodes)
                nodes.append(None)
                children = place(entry.children, index)
                nodes[index] = TocNode(
                    label=entry.label,
                    content_path=entry.content_path,
                    play_order=entry.play_order,
                    parent=parent,
                    children=children,
                )
                placed.append(index)
            return tuple(placed)

        roots = place(entries, None)
        return cls(nodes=tuple(nodes), roots=roots)

    def __len__(self) -> int:
        return len(self.nodes)

    def __getitem__(self, index: int) -> TocNode:
        return self.nodes[index]

    def children_of(self, index: Optional[int] = None) -> List[TocNode]:
        """Child nodes of `index`, or the top level when index is None."""
        indexes = self.roots if index is None else self.nodes[index].children
        return [self.nodes[i] for i in indexes]

    def walk(self) -> Iterator[Tuple[int, int, TocNode]]:
        """Yields (index, depth, node) in reading order."""
        stack = [(i, 0) for i in reversed(self.roots)]
        while stack:
            index, depth = stack.pop()
            node = self.nodes[index]
            yield index, depth, node
            stack.extend((child, depth + 1) for child in reversed(node.children))

    def to_list(self) -> List[dict]:
        """Nested, JSON-ready form handed to the UI."""
        def dump(index: int) -> dict:
            node = self.nodes[index]
            return {
                "label": node.label,
                "content_path": node.content_path,
                "play_order": node.play_order,
                "children": [dump(child) for child in node.children],
            }
        return [dump(index) for index in self.roots]


@dataclass(frozen=True)
class EpubDocument:
    """A loaded book. Never mutated after the loader returns it."""
    book_key: str                      # source filename, unique within the library
    title: str
    source_path: str                   # absolute path of the .epub on disk
    manifest: Mapping[str, ManifestEntry]
    spine: Tuple[str, ...]             # archive paths in reading order
    toc: TableOfContents = field(default_factory=TableOfContents)
    cover_resource_path: Optional[str] = None
    language: Optional[str] = None
    authors: Tuple[str, ...] = ()
    _by_path: Mapping[str, ManifestEntry] = field(
        init=False, repr=False, compare=False, default_factory=dict
    )

    def __post_init__(self):
        by_path = {}
        for entry in self.manifest.values():
            by_path.setdefault(entry.path, entry)
        for path in self.spine:
            if path not in by_path:
                raise LoadError(self.source_path, f"spine entry {path!r} is not in the manifest")
        object.__setattr__(self, '_by_path', MappingProxyType(by_path))

    def entry_for_path(self, path: str) -> Optional[ManifestEntry]:
        return self._by_path.get(path)


# --- Utilities ---

def archive_path(base_dir: str, href: str) -> Optional[str]:
    """
    Joins a package-relative href onto its base directory.
    Returns None if the result would leave the archive root.
    """
    joined = posixpath.normpath(posixpath.join(base_dir, href.replace('\\', '/')))
    if joined.startswith('/') or joined == '..' or joined.startswith('../'):
        return None
    return joined


def resolve_nav_href(base_dir: str, href: str) -> str:
    """Archive path for a navigation target, keeping its fragment."""
    path, sep, fragment = href.strip().partition('#')
    path = unquote(path)
    if path:
        path = archive_path(base_dir, path) or path
    return f"{path}#{fragment}" if sep else path


def collapse_whitespace(text: str) -> str:
    return ' '.join(text.split())


def metadata_values(book_obj, namespace: str, name: str) -> list:
    """ebooklib raises KeyError when a namespace is missing entirely."""
    try:
        return book_obj.get_metadata(namespace, name) or []
    except KeyError:
        return []


def first_metadata_text(book_obj, name: str) -> Optional[str]:
    for value, _attrs in metadata_values(book_obj, 'DC', name):
        if value and value.strip():
            return value.strip()
    return None


def parse_play_order(value: Optional[str], fallback: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return fallback


def parse_ncx(data: bytes, ncx_path: str) -> List[TocEntry]:
    """
    Parses an NCX navMap into TocEntry trees. Missing or broken playOrder
    attributes fall back to document order.
    """
    soup = BeautifulSoup(data, 'xml')
    nav_map = soup.find('navMap')
    if nav_map is None:
        raise ValueError("NCX document has no navMap")

    base_dir = posixpath.dirname(ncx_path)
    counter = itertools.count(1)

    def walk(parent) -> List[TocEntry]:
        entries = []
        for point in parent.find_all('navPoint', recursive=False):
            position = next(counter)
            label_tag = point.find('navLabel', recursive=False)
            content_tag = point.find('content', recursive=False)
            src = content_tag.get('src', '') if content_tag is not None else ''
            content_path = resolve_nav_href(base_dir, src)
            label = collapse_whitespace(label_tag.get_text(' ')) if label_tag is not None else ''
            entries.append(TocEntry(
                label=label or content_path,
                content_path=content_path,
                play_order=parse_play_order(point.get('playOrder'), position),
                children=walk(point),
            ))
        return entries

    return walk(nav_map)


def parse_nav_document(data: bytes, nav_path: str) -> List[TocEntry]:
    """Parses the EPUB 3 navigation document; play order is document order."""
    soup = BeautifulSoup(data, 'html.parser')
    nav = soup.find('nav', attrs={'epub:type': 'toc'}) or soup.find('nav')
    if nav is None:
        return []
    top = nav.find('ol')
    if top is None:
        return []

    base_dir = posixpath.dirname(nav_path)
    counter = itertools.count(1)

    def walk(list_tag) -> List[TocEntry]:
        entries = []
        for item in list_tag.find_all('li', recursive=False):
            position = next(counter)
            link = item.find(['a', 'span'], recursive=False)
            href = link.get('href', '') if link is not None and link.name == 'a' else ''
            content_path = resolve_nav_href(base_dir, href)
            label = collapse_whitespace(link.get_text(' ')) if link is not None else ''
            sublist = item.find('ol', recursive=False)
            entries.append(TocEntry(
                label=label or content_path,
                content_path=content_path,
                play_order=position,
                children=walk(sublist) if sublist is not None else [],
            ))
        return entries

    return walk(top)


def build_manifest(book_obj, opf_dir: str, epub_path: str) -> Dict[str, ManifestEntry]:
    manifest: Dict[str, ManifestEntry] = {}
    for item in book_obj.get_items():
        item_id = item.get_id()
        path = archive_path(opf_dir, item.get_name())
        if path is None:
            raise LoadError(epub_path, f"manifest item '{item_id}' points outside the archive")
        if item_id in manifest:
            raise LoadError(epub_path, f"duplicate manifest id '{item_id}'")
        mime_type = (
            item.media_type
            or mimetypes.guess_type(path)[0]
            or FALLBACK_MEDIA_TYPE
        )
        manifest[item_id] = ManifestEntry(id=item_id, path=path, mime_type=mime_type)
    return manifest


def build_spine(book_obj, manifest: Dict[str, ManifestEntry], epub_path: str) -> Tuple[str, ...]:
    spine = []
    for spine_item in book_obj.spine:
        # ebooklib keeps (idref, linear) pairs when reading
        item_id = spine_item[0] if isinstance(spine_item, tuple) else spine_item
        entry = manifest.get(item_id)
        if entry is None:
            raise LoadError(epub_path, f"spine references unknown item '{item_id}'")
        spine.append(entry.path)
    return tuple(spine)


def extract_toc(book_obj, manifest: Dict[str, ManifestEntry]) -> TableOfContents:
    """NCX first, then the EPUB 3 navigation document."""
    ncx_item = next(
        (item for item in book_obj.get_items() if item.media_type == NCX_MEDIA_TYPE),
        None
    )
    if ncx_item is not None:
        entries = parse_ncx(ncx_item.content, manifest[ncx_item.get_id()].path)
        return TableOfContents.from_entries(entries)

    nav_item = next(
        (item for item in book_obj.get_items() if isinstance(item, epub.EpubNav)),
        None
    )
    if nav_item is not None:
        entries = parse_nav_document(nav_item.content, manifest[nav_item.get_id()].path)
        return TableOfContents.from_entries(entries)

    return TableOfContents()


def find_cover_path(book_obj, manifest: Dict[str, ManifestEntry]) -> Optional[str]:
    """
    Cover lookup: the declared cover first (an image, or an HTML cover page
    backed by an image named like a cover), then any image named like a cover.
    """
    declared = None
    for value, attrs in metadata_values(book_obj, 'OPF', 'cover'):
        cover_id = (attrs or {}).get('content') or value
        if cover_id in manifest:
            declared = manifest[cover_id]
            break

    if declared is None:
        for item in book_obj.get_items():
            if item.get_type() == ebooklib.ITEM_COVER and item.get_id() in manifest:
                declared = manifest[item.get_id()]
                break

    named_image = next(
        (entry for entry in manifest.values()
         if entry.mime_type.startswith('image/') and 'cover' in entry.path.lower()),
        None
    )

    if declared is not None:
        if declared.mime_type.startswith('image/'):
            return declared.path
        return named_image.path if named_image else declared.path

    return named_image.path if named_image else None


# --- Main Loading Logic ---

def load_epub(epub_path: str) -> EpubDocument:
    """
    Opens one .epub file. Raises LoadError for anything that keeps the archive
    from being served: bad zip, missing container or package file, manifest
    entries missing from the archive, broken spine or navigation data.
    """
    epub_path = os.path.abspath(epub_path)
    book_key = os.path.basename(epub_path)

    reader = None
    try:
        reader = epub.EpubReader(epub_path, {'ignore_ncx': True})
        book_obj = reader.load()
        reader.process()
    except Exception as e:
        raise LoadError(epub_path, f"unreadable package ({e.__class__.__name__}: {e})") from e
    finally:
        if getattr(reader, 'zf', None) is not None:
            reader.zf.close()

    manifest = build_manifest(book_obj, reader.opf_dir, epub_path)
    spine = build_spine(book_obj, manifest, epub_path)

    try:
        toc = extract_toc(book_obj, manifest)
    except Exception as e:
        raise LoadError(epub_path, f"unreadable navigation ({e.__class__.__name__}: {e})") from e

    title = first_metadata_text(book_obj, 'title') or os.path.splitext(book_key)[0]
    authors = tuple(
        value.strip() for value, _attrs in metadata_values(book_obj, 'DC', 'creator')
        if value and value.strip()
    )

    document = EpubDocument(
        book_key=book_key,
        title=title,
        source_path=epub_path,
        manifest=MappingProxyType(manifest),
        spine=spine,
        toc=toc,
        cover_resource_path=find_cover_path(book_obj, manifest),
        language=first_metadata_text(book_obj, 'language'),
        authors=authors,
    )
    logger.info("Loaded %s: %r (%d spine items, %d toc entries)",
                book_key, title, len(spine), len(toc))
    return document


# --- CLI ---

if __name__ == "__main__":

    import sys
    if len(sys.argv) < 2:
        print("Usage: python epubshelf.py <file.epub>")
        sys.exit(1)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    try:
        doc = load_epub(sys.argv[1])
    except LoadError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("\n--- Summary ---")
    print(f"Title: {doc.title}")
    print(f"Authors: {', '.join(doc.authors)}")
    print(f"Manifest items: {len(doc.manifest)}")
    print(f"Spine items: {len(doc.spine)}")
    print(f"TOC entries: {len(doc.toc)}")
    print(f"Cover: {doc.cover_resource_path or '-'}")
