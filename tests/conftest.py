"""Shared fixtures: EPUB archives are synthesized per test into tmp_path.

No binary fixtures are checked in; every archive is written with zipfile
from the small templates below so tests can break exactly one thing at a time.
"""

import os
import sys
import zipfile

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from library import LibraryIndex  # noqa: E402

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""

OPF_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<package xmlns="http://www.idpf.org/2007/opf" version="2.0" unique-identifier="bookid">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/" xmlns:opf="http://www.idpf.org/2007/opf">
    {title}
    <dc:creator>Mary Shelley</dc:creator>
    <dc:language>en</dc:language>
    <dc:identifier id="bookid">urn:uuid:0f1e2d3c-4b5a-6978-8796-a5b4c3d2e1f0</dc:identifier>
    {cover_meta}
  </metadata>
  <manifest>
{items}
  </manifest>
  <spine{spine_toc}>
{itemrefs}
  </spine>
</package>
"""

NCX_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<ncx xmlns="http://www.daisy.org/z3986/2005/ncx/" version="2005-1">
  <head><meta name="dtb:uid" content="urn:uuid:0f1e2d3c"/></head>
  <docTitle><text>Test</text></docTitle>
  <navMap>
{points}
  </navMap>
</ncx>
"""

DEFAULT_NAV_POINTS = """
    <navPoint id="np1" playOrder="1">
      <navLabel><text>Letter 1</text></navLabel>
      <content src="ch1.html"/>
      <navPoint id="np2" playOrder="2">
        <navLabel><text>Letter 2</text></navLabel>
        <content src="ch1.html#letter-2"/>
      </navPoint>
    </navPoint>
    <navPoint id="np3" playOrder="3">
      <navLabel><text>Chapter 1</text></navLabel>
      <content src="ch2.html"/>
    </navPoint>
"""


def xhtml(title, body):
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<html xmlns="http://www.w3.org/1999/xhtml">\n'
        f'<head><title>{title}</title></head>\n'
        f'<body>\n{body}\n</body>\n</html>\n'
    ).encode("utf-8")


CH1_HTML = xhtml("Letter 1", (
    '<h1>Letter 1</h1>\n'
    '<p>You will rejoice to hear.</p>\n'
    '<p><a href="ch2.html">Next</a> <a href="mailto:test@example.com">Write</a></p>\n'
    '<h2 id="letter-2">Letter 2</h2>'
))
CH2_HTML = xhtml("Chapter 1", '<h1>Chapter 1</h1>\n<p>I am by birth a Genevese.</p>')
STYLE_CSS = b"body { font-family: serif; }\n"
COVER_JPG = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00fake-cover-bytes\xff\xd9"


def default_items():
    """(id, href, media-type, content, properties) for the standard test book."""
    return [
        ("ncx", "toc.ncx", "application/x-dtbncx+xml", None, None),
        ("ch1", "ch1.html", "application/xhtml+xml", CH1_HTML, None),
        ("ch2", "ch2.html", "application/xhtml+xml", CH2_HTML, None),
        ("css", "style.css", "text/css", STYLE_CSS, None),
        ("cover-img", "cover.jpg", "image/jpeg", COVER_JPG, None),
    ]


def write_epub(
    path,
    title="Frankenstein",
    items=None,
    spine=("ch1", "ch2"),
    nav_points=DEFAULT_NAV_POINTS,
    cover_id="cover-img",
    skip_files=(),
    extra_files=None,
    include_container=True,
):
    """
    Writes a minimal EPUB 2 archive rooted at OEBPS/.
    An item whose content is None and whose media type is NCX gets the
    generated NCX built from `nav_points`.
    """
    items = default_items() if items is None else items

    manifest_lines = []
    for item_id, href, media_type, _content, properties in items:
        props = f' properties="{properties}"' if properties else ""
        manifest_lines.append(
            f'    <item id="{item_id}" href="{href}" media-type="{media_type}"{props}/>'
        )
    itemrefs = "\n".join(f'    <itemref idref="{idref}"/>' for idref in spine)
    has_ncx = any(media_type == "application/x-dtbncx+xml" for _, _, media_type, _, _ in items)

    opf = OPF_TEMPLATE.format(
        title=f"<dc:title>{title}</dc:title>" if title else "",
        cover_meta=f'<meta name="cover" content="{cover_id}"/>' if cover_id else "",
        items="\n".join(manifest_lines),
        spine_toc=' toc="ncx"' if has_ncx else "",
        itemrefs=itemrefs,
    )

    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("mimetype", "application/epub+zip", compress_type=zipfile.ZIP_STORED)
        if include_container:
            zf.writestr("META-INF/container.xml", CONTAINER_XML)
        zf.writestr("OEBPS/content.opf", opf)
        for _item_id, href, media_type, content, _properties in items:
            if href in skip_files:
                continue
            if content is None and media_type == "application/x-dtbncx+xml":
                content = NCX_TEMPLATE.format(points=nav_points).encode("utf-8")
            zf.writestr(f"OEBPS/{href}", content or b"", compress_type=zipfile.ZIP_DEFLATED)
        for name, content in (extra_files or {}).items():
            zf.writestr(name, content)
    return str(path)


@pytest.fixture
def books_dir(tmp_path):
    directory = tmp_path / "books"
    directory.mkdir()
    return directory


@pytest.fixture
def make_epub(books_dir):
    """Factory: make_epub('name.epub', **write_epub options) -> path."""
    def factory(name="frankenstein.epub", **options):
        return write_epub(books_dir / name, **options)
    return factory


@pytest.fixture
def frankenstein_path(make_epub):
    return make_epub("frankenstein.epub")


@pytest.fixture
def library(books_dir, frankenstein_path):
    return LibraryIndex.load_all(str(books_dir))


@pytest.fixture
def frankenstein(library):
    return library.get("frankenstein.epub")
