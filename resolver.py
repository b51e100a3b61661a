"""
Resolves custom-scheme URIs (epub://<bookKey>/<resourcePath>) to archive bytes.
"""

import logging
import zipfile
from typing import NamedTuple, Optional
from urllib.parse import quote, unquote, urlsplit

from epubshelf import (
    DEFAULT_SCHEME,
    EpubDocument,
    InvalidUri,
    ManifestEntry,
    NotFound,
    ResourceNotFound,
)
from library import LibraryIndex
from navigation import candidate_paths, normalize_content_path
from rewriter import ContentRewriter

logger = logging.getLogger(__name__)


class ResourceRequest(NamedTuple):
    book_key: str
    resource_path: str


class Resource(NamedTuple):
    content: bytes
    mime_type: str


def parse_resource_uri(uri: str, scheme: str = DEFAULT_SCHEME) -> ResourceRequest:
    """
    Splits a resource URI into book key and normalized archive path.
    The fragment is dropped; '..' segments and NUL bytes are rejected.
    """
    try:
        parts = urlsplit(uri)
    except ValueError as e:
        raise InvalidUri(uri, str(e)) from e

    if parts.scheme != scheme.lower():
        raise InvalidUri(uri, f"expected scheme '{scheme}'")

    # netloc keeps the filename's case; hostname would lower it
    book_key = unquote(parts.netloc)
    raw_path = parts.path[1:] if parts.path.startswith('/') else parts.path
    if not book_key or not raw_path:
        raise InvalidUri(uri, "book key and resource path are required")

    resource_path = normalize_content_path(raw_path)
    if not resource_path or '\x00' in resource_path:
        raise InvalidUri(uri, "empty or binary resource path")
    if resource_path.startswith('//'):
        raise InvalidUri(uri, "absolute resource path")
    if '..' in resource_path.split('/'):
        raise InvalidUri(uri, "path traversal")

    return ResourceRequest(book_key=book_key, resource_path=resource_path)


def build_resource_uri(book_key: str, resource_path: str, scheme: str = DEFAULT_SCHEME) -> str:
    return f"{scheme}://{quote(book_key, safe='')}/{quote(resource_path, safe='/')}"


def find_manifest_entry(doc: EpubDocument, resource_path: str) -> Optional[ManifestEntry]:
    """Exact match first, then the path without a single leading '/'."""
    for candidate in candidate_paths(resource_path):
        entry = doc.entry_for_path(candidate)
        if entry is not None:
            return entry
    return None


class ResourceResolver:
    """
    Serves archive resources for the library. Every call re-reads the
    archive, so nothing here is shared between requests.
    """

    def __init__(self, library: LibraryIndex, rewriter: Optional[ContentRewriter] = None,
                 scheme: str = DEFAULT_SCHEME):
        self.library = library
        self.scheme = scheme
        self.rewriter = rewriter or ContentRewriter(scheme)

    def resolve(self, uri: str) -> Resource:
        """
        Returns the resource bytes and media type for `uri`.
        Raises InvalidUri, BookNotFound or ResourceNotFound.
        """
        request = parse_resource_uri(uri, self.scheme)
        try:
            return self.resolve_request(request)
        except NotFound as e:
            logger.debug("Resolve failed for %s: %s", uri, e)
            raise

    def resolve_request(self, request: ResourceRequest) -> Resource:
        doc = self.library.get(request.book_key)
        entry = find_manifest_entry(doc, request.resource_path)
        if entry is None:
            raise ResourceNotFound(request.book_key, request.resource_path)

        content = read_archive_entry(doc, entry)
        content = self.rewriter.rewrite_resource(content, entry.mime_type)
        return Resource(content=content, mime_type=entry.mime_type)


def read_archive_entry(doc: EpubDocument, entry: ManifestEntry) -> bytes:
    try:
        with zipfile.ZipFile(doc.source_path) as zf:
            return zf.read(entry.path)
    except (KeyError, OSError, zipfile.BadZipFile) as e:
        raise ResourceNotFound(doc.book_key, entry.path) from e
