"""
Injects the reading bridge (default stylesheet plus the link and pagination
script) into HTML and XHTML payloads before they are served.
"""

import logging
import os
import re
import sys
from typing import Optional

from jinja2 import Environment, FileSystemLoader

from epubshelf import DEFAULT_SCHEME

logger = logging.getLogger(__name__)

TEMPLATES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")
# Installed (non-editable) copies ship the template as package data-files.
INSTALLED_TEMPLATES_DIR = os.path.join(sys.prefix, "share", "epubshelf", "templates")
BRIDGE_TEMPLATE = "bridge.html"
MARKER = "data-epub-bridge"

HTML_MIME_TYPES = frozenset({
    "text/html",
    "application/xhtml+xml",
    "application/xhtml",
    "text/xhtml",
})

_BODY_CLOSE = re.compile(r"</body\s*>", re.IGNORECASE)
_BODY_CLOSE_BYTES = re.compile(rb"</body\s*>", re.IGNORECASE)

_template_env = Environment(
    loader=FileSystemLoader([TEMPLATES_DIR, INSTALLED_TEMPLATES_DIR]),
    autoescape=False,
    keep_trailing_newline=True,
)


def is_html_mime(mime_type: Optional[str]) -> bool:
    """True for the HTML/XHTML media types, ignoring parameters and case."""
    if not mime_type:
        return False
    return mime_type.split(";", 1)[0].strip().lower() in HTML_MIME_TYPES


def render_bridge(scheme: str = DEFAULT_SCHEME, mount_prefix: str = "/epub") -> str:
    """Renders the injected style and script block."""
    template = _template_env.get_template(BRIDGE_TEMPLATE)
    return template.render(scheme=scheme, mount_prefix=mount_prefix)


def _splice(text: str, block: str) -> str:
    matches = list(_BODY_CLOSE.finditer(text))
    if not matches:
        return text + block
    at = matches[-1].start()
    return text[:at] + block + text[at:]


def _splice_bytes(data: bytes, block: bytes) -> bytes:
    matches = list(_BODY_CLOSE_BYTES.finditer(data))
    if not matches:
        return data + block
    at = matches[-1].start()
    return data[:at] + block + data[at:]


def rewrite_html(content: bytes, block: str) -> bytes:
    """
    Inserts `block` before the last closing body tag, or appends it.
    Content that already carries the bridge marker is returned as is.
    """
    if not content:
        return block.encode("utf-8")

    # UTF-16 needs a decode/encode round trip; everything else is ASCII-compatible.
    for bom, codec in ((b"\xff\xfe", "utf-16-le"), (b"\xfe\xff", "utf-16-be")):
        if content.startswith(bom):
            try:
                text = content[len(bom):].decode(codec)
            except UnicodeDecodeError as e:
                logger.warning("Serving undecodable %s payload without bridge: %s", codec, e)
                return content
            if MARKER in text:
                return content
            return bom + _splice(text, block).encode(codec)

    if MARKER.encode("ascii") in content:
        return content
    return _splice_bytes(content, block.encode("utf-8"))


class ContentRewriter:
    """Pure transformer; the rendered block is fixed per scheme and mount prefix."""

    def __init__(self, scheme: str = DEFAULT_SCHEME, mount_prefix: str = "/epub"):
        self.scheme = scheme
        self.mount_prefix = mount_prefix
        self.block = render_bridge(scheme, mount_prefix)

    def rewrite(self, content: bytes) -> bytes:
        return rewrite_html(content, self.block)

    def rewrite_resource(self, content: bytes, mime_type: str) -> bytes:
        """Rewrites HTML/XHTML payloads; other media types pass through untouched."""
        if is_html_mime(mime_type):
            return self.rewrite(content)
        return content
