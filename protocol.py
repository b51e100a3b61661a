"""
Message shapes exchanged between rendered content, the host page and the
server, plus the client-owned reading position contract.
"""

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Union

from epubshelf import DEFAULT_SCHEME, ProtocolError

logger = logging.getLogger(__name__)

EXTERNAL_LINK = "epub-external-link"
PAGINATION = "epub-pagination"
PAGINATION_NEXT = "pagination-next"
PAGINATION_PREVIOUS = "pagination-previous"

_SCHEME_PREFIX = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.\-]*):")


class LinkKind(Enum):
    FRAGMENT = "fragment"
    INTERNAL = "internal"
    EXTERNAL = "external"


def classify_href(href: str, scheme: str = DEFAULT_SCHEME) -> LinkKind:
    """Same rules as the injected script: the scheme decides, never the host."""
    value = href.strip()
    if value.startswith("#"):
        return LinkKind.FRAGMENT
    match = _SCHEME_PREFIX.match(value)
    if match is None or match.group(1).lower() == scheme.lower():
        return LinkKind.INTERNAL
    return LinkKind.EXTERNAL


# --- Cross-frame messages ---

@dataclass(frozen=True)
class ExternalLinkMessage:
    url: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": EXTERNAL_LINK, "url": self.url}


@dataclass(frozen=True)
class PaginationMessage:
    page: int
    total_pages: int

    def to_dict(self) -> Dict[str, Any]:
        return {"type": PAGINATION, "page": self.page, "totalPages": self.total_pages}


@dataclass(frozen=True)
class PaginationCommand:
    direction: str  # 'next' or 'previous'

    def to_dict(self) -> Dict[str, Any]:
        return {"type": f"pagination-{self.direction}"}


Message = Union[ExternalLinkMessage, PaginationMessage, PaginationCommand]


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def origin_allowed(origin: Optional[str], scheme: str = DEFAULT_SCHEME,
                   allowed_origins: Iterable[str] = ()) -> bool:
    if origin is None or origin == "null":
        return True
    if origin.lower().startswith(f"{scheme.lower()}://"):
        return True
    return origin in set(allowed_origins)


def decode_message(data: Any, origin: Optional[str] = None, scheme: str = DEFAULT_SCHEME,
                   allowed_origins: Iterable[str] = ()) -> Optional[Message]:
    """
    Strict decoder for messages crossing the frame boundary.
    Anything malformed, unknown or from a refused origin is logged and
    decoded to None.
    """
    if not origin_allowed(origin, scheme, allowed_origins):
        logger.warning("Dropped message from disallowed origin %r", origin)
        return None
    if not isinstance(data, dict):
        logger.warning("Dropped non-object message: %r", data)
        return None

    kind = data.get("type")
    if kind == EXTERNAL_LINK:
        url = data.get("url")
        if not isinstance(url, str) or not url.strip():
            logger.warning("Dropped %s message without url", EXTERNAL_LINK)
            return None
        return ExternalLinkMessage(url=url)

    if kind == PAGINATION:
        page, total = data.get("page"), data.get("totalPages")
        if not (_is_int(page) and _is_int(total)) or page < 0 or total < 1 or page >= total:
            logger.warning("Dropped malformed %s message: %r", PAGINATION, data)
            return None
        return PaginationMessage(page=page, total_pages=total)

    if kind == PAGINATION_NEXT:
        return PaginationCommand("next")
    if kind == PAGINATION_PREVIOUS:
        return PaginationCommand("previous")

    logger.warning("Dropped message with unknown type %r", kind)
    return None


# --- Reading position ---

@dataclass(frozen=True)
class ReadingPosition:
    """
    Last read location, stored by the client under its book key.
    content_path is the archive path without the '<scheme>://<bookKey>/' prefix.
    """
    book_key: str
    content_path: str
    page: int        # 0-indexed page within the content document
    timestamp: int   # milliseconds since the epoch

    @classmethod
    def from_dict(cls, data: Any, scheme: str = DEFAULT_SCHEME) -> 'ReadingPosition':
        if not isinstance(data, dict):
            raise ProtocolError("reading position must be a JSON object")
        missing = [k for k in ("bookKey", "contentPath", "page", "timestamp") if k not in data]
        if missing:
            raise ProtocolError(f"reading position is missing {', '.join(missing)}")

        book_key, content_path = data["bookKey"], data["contentPath"]
        page, timestamp = data["page"], data["timestamp"]
        if not isinstance(book_key, str) or not book_key:
            raise ProtocolError("bookKey must be a non-empty string")
        if not isinstance(content_path, str):
            raise ProtocolError("contentPath must be a string")
        if not _is_int(page) or page < 0:
            raise ProtocolError("page must be a non-negative integer")
        if not _is_int(timestamp):
            raise ProtocolError("timestamp must be an integer")
        if content_path.lower().startswith(f"{scheme.lower()}://"):
            raise ProtocolError("contentPath must not carry the resource URI prefix")

        return cls(book_key=book_key, content_path=content_path, page=page, timestamp=timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bookKey": self.book_key,
            "contentPath": self.content_path,
            "page": self.page,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_json(cls, text: str, scheme: str = DEFAULT_SCHEME) -> 'ReadingPosition':
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ProtocolError(f"reading position is not valid JSON: {e}") from e
        return cls.from_dict(data, scheme)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())
