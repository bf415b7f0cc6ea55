"""目录解析：NCX（EPUB2）→ Nav（EPUB3）→ spine 合成 → manifest 兜底。

每一层都是完整的备选方案，第一层得到非空结果即返回。
本模块从不抛异常，最坏情况返回空目录，只影响导航功能。
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from bs4 import BeautifulSoup, Tag
from loguru import logger

from core.config import ReaderConfig
from core.epub.parser import NCX_MEDIA_TYPE, ManifestItem, PackageDocument
from core.epub.utils import local_name, parse_xml, rebase_href, relative_href

# 看起来是自动生成的标题：文件名、纯数字、part/section 前缀、单词+编号
_GENERIC_TITLE_RES = (
    re.compile(r"\.x?html?$", re.I),
    re.compile(r"^\d+$"),
    re.compile(r"^(?:part|section)", re.I),
    re.compile(r"^(?:chapter|chap|ch|text|split|item|index|page|file|html)?[\s_\-.]*\d+[\w\-.]*$", re.I),
    re.compile(r"^[a-z]+[_\-]?\d+$", re.I),
)

_TITLE_TAGS = ("h1", "title", "h2")


@dataclass
class TOCNode:
    title: str
    href: str | None          # 相对 OPF 目录的路径 + 可选 #fragment
    level: int                # 嵌套深度，从 1 开始，不截断
    children: list[TOCNode] = field(default_factory=list)

    def display_level(self, max_level: int = 3) -> int:
        return max(1, min(self.level, max_level))


def resolve_toc(package: PackageDocument, config: ReaderConfig | None = None) -> list[TOCNode]:
    """按层级顺序解析目录，返回顶层节点列表（可能为空）。"""
    config = config or ReaderConfig()

    tiers = (
        ("ncx", lambda: _toc_from_ncx(package)),
        ("nav", lambda: _toc_from_nav(package)),
        ("spine", lambda: _toc_from_spine(package, config)),
        ("manifest", lambda: _toc_from_manifest(package, config)),
    )
    for name, build in tiers:
        try:
            nodes = build()
        except Exception as e:  # noqa: BLE001 - 目录失败只降级，不能中断加载
            logger.warning("toc tier {} failed: {}", name, e)
            continue
        if nodes:
            logger.debug("toc  tier={} nodes={}", name, len(nodes))
            return nodes
        logger.debug("toc  tier={} empty", name)

    logger.warning("未能生成目录：{}", package.opf_path or package.base_dir)
    return []


def flatten_toc(nodes: list[TOCNode]) -> Iterator[TOCNode]:
    """深度优先遍历全部节点。"""
    for node in nodes:
        yield node
        yield from flatten_toc(node.children)


def toc_to_dict(nodes: list[TOCNode], max_level: int = 3) -> list[dict]:
    return [
        {
            "title": node.title,
            "href": node.href,
            "level": node.level,
            "display_level": node.display_level(max_level),
            "children": toc_to_dict(node.children, max_level),
        }
        for node in nodes
    ]


def looks_generic(title: str | None) -> bool:
    """判断标题是否像自动生成的（需要打开章节文件找更好的标题）。"""
    if not title:
        return True
    title = title.strip()
    if len(title) < 3 or title.lower() == "chapter":
        return True
    return any(r.search(title) for r in _GENERIC_TITLE_RES)


def extract_heading_title(path: Path, scan_chars: int = 5000) -> str | None:
    """只扫描文件开头，依次取第一个 <h1>、<title>、<h2> 的文本。"""
    try:
        head = path.read_bytes().decode("utf-8", errors="replace")[:scan_chars]
    except OSError:
        return None
    soup = BeautifulSoup(head, "lxml")
    for name in _TITLE_TAGS:
        tag = soup.find(name)
        if tag is None:
            continue
        text = " ".join(tag.get_text(" ").split())
        if text:
            return text
    return None


# ── 第 1 层：NCX ────────────────────────────────────────────────────────────


def find_ncx_item(package: PackageDocument) -> ManifestItem | None:
    if package.toc_id and package.toc_id in package.manifest:
        return package.manifest[package.toc_id]
    for item in package.manifest.values():
        if item.media_type == NCX_MEDIA_TYPE:
            return item
    return None


def _toc_from_ncx(package: PackageDocument) -> list[TOCNode]:
    item = find_ncx_item(package)
    if item is None:
        logger.debug("no NCX declared")
        return []
    try:
        raw = item.path.read_bytes()
    except OSError as e:
        logger.debug("cannot read NCX {}: {}", item.href, e)
        return []
    return parse_ncx(raw, item.path.parent, package.base_dir)


def parse_ncx(raw: bytes, ncx_dir: Path, base_dir: Path) -> list[TOCNode]:
    """递归解析 navMap 下的 navPoint，任意深度。"""
    root = parse_xml(raw)
    if root is None:
        return []

    nav_map = next((el for el in root.iter() if local_name(el) == "navmap"), root)

    def walk(parent, level: int) -> list[TOCNode]:
        nodes: list[TOCNode] = []
        for el in parent:
            if local_name(el) != "navpoint":
                continue
            title = ""
            href: str | None = None
            for child in el:
                name = local_name(child)
                if name == "navlabel" and not title:
                    text_el = next((t for t in child if local_name(t) == "text"), child)
                    title = " ".join("".join(text_el.itertext()).split())
                elif name == "content" and href is None:
                    src = (child.get("src") or "").strip()
                    href = rebase_href(src, ncx_dir, base_dir, quoted=False) if src else None
            nodes.append(TOCNode(
                title=title or "Untitled",
                href=href,
                level=level,
                children=walk(el, level + 1),
            ))
        return nodes

    return walk(nav_map, 1)


# ── 第 2 层：Nav ────────────────────────────────────────────────────────────


def find_nav_item(package: PackageDocument) -> ManifestItem | None:
    for item in package.manifest.values():
        if "nav" in item.properties:
            return item
    return None


def _toc_from_nav(package: PackageDocument) -> list[TOCNode]:
    item = find_nav_item(package)
    if item is None:
        logger.debug("no Nav document declared")
        return []
    try:
        raw = item.path.read_bytes()
    except OSError as e:
        logger.debug("cannot read Nav {}: {}", item.href, e)
        return []
    return parse_nav(raw, item.path.parent, package.base_dir)


def parse_nav(raw: bytes | str, nav_dir: Path, base_dir: Path) -> list[TOCNode]:
    """解析 Nav 文档中的第一个 <ol>（优先 epub:type="toc" 的 nav）。"""
    soup = BeautifulSoup(raw, "lxml")

    ol = None
    for nav in soup.find_all("nav"):
        if "toc" in (nav.get("epub:type") or nav.get("type") or "").split():
            ol = nav.find("ol")
            break
    if ol is None:
        ol = soup.find("ol")
    if ol is None:
        return []

    def walk(list_tag: Tag, level: int) -> list[TOCNode]:
        nodes: list[TOCNode] = []
        for li in list_tag.find_all("li", recursive=False):
            label = _own_label(li)
            title = " ".join(label.get_text(" ").split()) if label else ""
            href = None
            if label is not None and label.name == "a" and label.get("href"):
                href = rebase_href(label["href"].strip(), nav_dir, base_dir, quoted=False)
            nested = li.find("ol", recursive=False)
            children = walk(nested, level + 1) if nested is not None else []
            if not title and not href and not children:
                continue
            nodes.append(TOCNode(title=title or "Untitled", href=href, level=level, children=children))
        return nodes

    return walk(ol, 1)


# ── 第 3/4 层：spine 合成与 manifest 兜底 ─────────────────────────────────


def _toc_from_spine(package: PackageDocument, config: ReaderConfig) -> list[TOCNode]:
    nodes: list[TOCNode] = []
    for item in package.spine_items():
        if not item.is_html:
            continue
        title = item.inferred_title
        if looks_generic(title):
            title = extract_heading_title(item.path, config.title_scan_chars) or title
        nodes.append(TOCNode(title=title or "Chapter", href=_base_href(item, package), level=1))
    return nodes


def _toc_from_manifest(package: PackageDocument, config: ReaderConfig) -> list[TOCNode]:
    nodes: list[TOCNode] = []
    for item in sorted(package.html_items(), key=lambda i: i.id):
        title = extract_heading_title(item.path, config.title_scan_chars) or item.id
        nodes.append(TOCNode(title=title, href=_base_href(item, package), level=1))
    return nodes


def _own_label(li: Tag) -> Tag | None:
    """li 自己的 <a>（优先）或 <span>，不取嵌套子列表里的。"""
    owned = [tag for tag in li.find_all(["a", "span"]) if tag.find_parent("li") is li]
    for tag in owned:
        if tag.name == "a":
            return tag
    return owned[0] if owned else None


def _base_href(item: ManifestItem, package: PackageDocument) -> str:
    return relative_href(item.path, package.base_dir)
