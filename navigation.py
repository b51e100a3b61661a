"""
Reading-order helpers over a loaded EpubDocument.

Path normalization lives here so the resource resolver and the spine lookup
treat the same literal path the same way.
"""

from typing import List, Optional, Tuple
from urllib.parse import unquote

from epubshelf import EpubDocument, TableOfContents


def normalize_content_path(content_path: str) -> str:
    """Drops the fragment, percent-decodes and uses forward slashes."""
    path = content_path.split('#', 1)[0]
    return unquote(path).replace('\\', '/')


def candidate_paths(path: str) -> List[str]:
    """Archive paths to try for a normalized path: as given, then without one leading '/'."""
    candidates = [path]
    if path.startswith('/'):
        candidates.append(path[1:])
    return candidates


def spine_of(doc: EpubDocument) -> Tuple[str, ...]:
    return doc.spine


def toc_of(doc: EpubDocument) -> TableOfContents:
    return doc.toc


def lookup_variants(content_path: str) -> List[str]:
    """
    Paths to compare against the spine, most literal first.
    Archive names may themselves contain '#' or '%', so the raw path and each
    prefix before a '#' are tried verbatim before their decoded forms.
    """
    variants = [content_path]
    cut = content_path.rfind('#')
    while cut != -1:
        variants.append(content_path[:cut])
        cut = content_path.rfind('#', 0, cut)
    variants.append(normalize_content_path(content_path))
    for prefix in variants[1:-1]:
        variants.append(unquote(prefix).replace('\\', '/'))
    ordered = []
    for variant in variants:
        for candidate in candidate_paths(variant):
            if candidate and candidate not in ordered:
                ordered.append(candidate)
    return ordered


def spine_index_of(doc: EpubDocument, content_path: str) -> Optional[int]:
    """
    Index of the first spine entry matching `content_path`, or None.
    'OEBPS/ch2.html#part' and 'OEBPS/ch2%2Ehtml' both match 'OEBPS/ch2.html',
    and every spine path matches its own position.
    """
    for candidate in lookup_variants(content_path):
        for index, spine_path in enumerate(doc.spine):
            if spine_path == candidate:
                return index
    return None


def spine_item(doc: EpubDocument, index: int) -> Optional[str]:
    if 0 <= index < len(doc.spine):
        return doc.spine[index]
    return None
