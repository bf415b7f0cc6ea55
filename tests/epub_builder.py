"""测试用 EPUB 构造工具：直接用 zipfile 在临时目录里拼出小书。"""

from __future__ import annotations

import zipfile
from pathlib import Path
from xml.sax.saxutils import escape

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="{opf}" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""


def opf(
    manifest: list[tuple],
    spine: list[str],
    title: str | None = "Test Book",
    author: str | None = "Tester",
    language: str | None = "en",
    toc: str | None = None,
    extra_meta: str = "",
) -> str:
    """manifest 元素：(id, href, media_type) 或 (id, href, media_type, properties)。"""
    meta = []
    if title is not None:
        meta.append(f"<dc:title>{escape(title)}</dc:title>")
    if author is not None:
        meta.append(f"<dc:creator>{escape(author)}</dc:creator>")
    if language is not None:
        meta.append(f"<dc:language>{language}</dc:language>")
    meta.append(extra_meta)

    items = []
    for entry in manifest:
        item_id, href, media_type = entry[:3]
        props = f' properties="{entry[3]}"' if len(entry) > 3 else ""
        items.append(f'<item id="{item_id}" href="{href}" media-type="{media_type}"{props}/>')

    toc_attr = f' toc="{toc}"' if toc else ""
    refs = "".join(f'<itemref idref="{idref}"/>' for idref in spine)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<package xmlns="http://www.idpf.org/2007/opf" version="3.0" unique-identifier="uid">\n'
        '<metadata xmlns:dc="http://purl.org/dc/elements/1.1/">' + "".join(meta) + "</metadata>\n"
        "<manifest>" + "".join(items) + "</manifest>\n"
        f"<spine{toc_attr}>" + refs + "</spine>\n"
        "</package>\n"
    )


def chapter(heading: str | None, *paragraphs: str, head: str = "", title: str | None = None) -> str:
    body = f"<h1>{escape(heading)}</h1>" if heading else ""
    body += "".join(f"<p>{p}</p>" for p in paragraphs)
    title_tag = f"<title>{escape(title)}</title>" if title else ""
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<html xmlns="http://www.w3.org/1999/xhtml">'
        f"<head>{title_tag}{head}</head><body>{body}</body></html>"
    )


def ncx(points: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<ncx xmlns="http://www.daisy.org/z3986/2005/ncx/" version="2005-1">'
        f"<navMap>{points}</navMap></ncx>"
    )


def nav_point(label: str, src: str, children: str = "") -> str:
    return (
        f'<navPoint><navLabel><text>{escape(label)}</text></navLabel>'
        f'<content src="{src}"/>{children}</navPoint>'
    )


def write_epub(
    path: Path,
    files: dict[str, str | bytes],
    opf_path: str | None = "OEBPS/content.opf",
) -> Path:
    """写出 EPUB；opf_path 为 None 时不生成 container.xml。"""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("mimetype", "application/epub+zip", compress_type=zipfile.ZIP_STORED)
        if opf_path is not None:
            zf.writestr("META-INF/container.xml", CONTAINER_XML.format(opf=opf_path))
        for name, content in files.items():
            zf.writestr(name, content)
    return path


def minimal_files() -> dict[str, str]:
    """两章、无 NCX / Nav 的最小书。"""
    return {
        "OEBPS/content.opf": opf(
            manifest=[
                ("c1", "chap1.html", "application/xhtml+xml"),
                ("c2", "chap2.html", "application/xhtml+xml"),
            ],
            spine=["c1", "c2"],
        ),
        "OEBPS/chap1.html": chapter("The Beginning", "It was a bright cold day in April.", "Second paragraph here."),
        "OEBPS/chap2.html": chapter("The Middle", "And the clocks were striking thirteen."),
    }
