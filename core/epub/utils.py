"""EPUB 各解析步骤共用的小工具：宽容 XML 解析、路径与 href 处理。"""

from __future__ import annotations

import os
import re
from pathlib import Path, PurePosixPath
from urllib.parse import quote, unquote

from lxml import etree

# 不需要改写的链接：外部 URL、内嵌数据、页内锚点等
_EXTERNAL_RE = re.compile(r"^(?:[a-zA-Z][a-zA-Z0-9+.\-]*:|//|#)")

HTML_MEDIA_TYPES = frozenset(["application/xhtml+xml", "text/html"])
HTML_SUFFIXES = frozenset([".html", ".xhtml", ".htm"])


def parse_xml(raw: bytes) -> etree._Element | None:
    """宽容解析 XML，实体错误、命名空间异常都尽量恢复；彻底失败返回 None。"""
    if not raw or not raw.strip():
        return None
    parser = etree.XMLParser(recover=True, resolve_entities=False, no_network=True)
    try:
        return etree.fromstring(raw, parser=parser)
    except (etree.XMLSyntaxError, ValueError):
        return None


def local_name(el: etree._Element) -> str:
    """忽略命名空间前缀的小写标签名；注释、处理指令返回空串。"""
    tag = el.tag
    if not isinstance(tag, str):
        return ""
    # recover 模式下未声明的前缀会原样留在标签名里（dc:title）
    tag = tag.rpartition("}")[2]
    return tag.rpartition(":")[2].lower()


def iter_local(root: etree._Element, name: str):
    """按本地名遍历元素（dc:title、opf:item、无命名空间的 item 都能命中）。"""
    for el in root.iter():
        if local_name(el) == name:
            yield el


def split_href(href: str) -> tuple[str, str]:
    """'a/b.html#x' -> ('a/b.html', 'x')。"""
    path, _, fragment = href.partition("#")
    return path, fragment


def is_external(href: str) -> bool:
    return not href or bool(_EXTERNAL_RE.match(href.strip()))


def is_html_path(path: str | Path) -> bool:
    return PurePosixPath(str(path)).suffix.lower() in HTML_SUFFIXES


def resolve_href(base_dir: Path, href: str) -> Path:
    """把百分号编码的相对 href 解析成绝对路径（不要求文件存在）。"""
    path, _ = split_href(href)
    return Path(os.path.normpath(base_dir / unquote(path)))


def relative_href(path: Path, base_dir: Path) -> str:
    """path 相对于 base_dir 的 POSIX 形式，跨目录时带 ../。"""
    rel = os.path.relpath(os.path.normpath(path), os.path.normpath(base_dir))
    return PurePosixPath(*Path(rel).parts).as_posix()


def quote_href(href: str) -> str:
    """对路径部分重新做百分号编码（fig#1.png -> fig%231.png），fragment 原样保留。"""
    path, sep, fragment = href.partition("#")
    return quote(path, safe="/") + sep + fragment


def rebase_href(href: str, from_dir: Path, base_dir: Path, quoted: bool = True) -> str:
    """把相对 from_dir 的 href 改写为相对 base_dir，保留 #fragment。

    quoted=False 返回解码后的路径，用作章节 / 目录的关联键；写回 HTML 属性时必须编码。
    """
    if is_external(href):
        return href
    path, fragment = split_href(href)
    rebased = relative_href(resolve_href(from_dir, path), base_dir)
    if quoted:
        rebased = quote(rebased, safe="/")
    return f"{rebased}#{fragment}" if fragment else rebased
