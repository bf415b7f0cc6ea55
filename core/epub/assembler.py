"""文档组装：按 spine 顺序把各章 body 合并成一个可导航的 HTML 文档。

每章包在 <div class="chapter" id="chapter-N" data-original-href="..."> 中，
data-original-href 是后续导航、阅读位置和段落身份计算使用的关联键。
所有相对路径都改写为相对 OPF 目录（index.html 就写在那里）。
关联键保持解码形式，写回 HTML 属性时重新百分号编码。
作者写的 id 改为 chapter-N--id，链接与目录一起改写。
"""

from __future__ import annotations

import html
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import quote, unquote

from bs4 import BeautifulSoup, Tag
from loguru import logger

from core.config import ReaderConfig
from core.epub.parser import ManifestItem, PackageDocument
from core.epub.toc import TOCNode
from core.epub.utils import is_external, quote_href, rebase_href, relative_href, resolve_href, split_href

OUTPUT_FILENAME = "index.html"

# 需要改写路径的属性
_URL_ATTRS = ("src", "href", "poster", "xlink:href")

FAILED_CHAPTER_HTML = '<div class="chapter-error">内容加载失败</div>'


def scoped_anchor(chapter_index: int, fragment: str) -> str:
    """各章节的 id 命名空间互相独立，合并后统一加章节前缀避免冲突。"""
    return f"chapter-{chapter_index}--{fragment}"


@dataclass
class ChapterContainer:
    index: int
    item_id: str
    original_href: str     # 相对 OPF 目录，如 Text/chap1.xhtml
    content: str = field(repr=False)
    failed: bool = False

    @property
    def anchor_id(self) -> str:
        return f"chapter-{self.index}"

    def scoped_id(self, fragment: str) -> str:
        return scoped_anchor(self.index, fragment)


@dataclass
class AssembledDocument:
    title: str
    author: str | None
    base_dir: Path
    chapters: list[ChapterContainer]
    toc: list[TOCNode]
    css_links: list[str]
    soup: BeautifulSoup = field(repr=False)

    @property
    def html(self) -> str:
        return str(self.soup)

    @property
    def output_path(self) -> Path:
        return self.base_dir / OUTPUT_FILENAME

    def write(self, path: Path | None = None) -> Path:
        path = path or self.output_path
        path.write_text(self.html, encoding="utf-8")
        logger.debug("document written: {} ({} chars)", path, len(self.html))
        return path

    def find_chapter(self, href: str) -> ChapterContainer | None:
        return find_chapter(self.chapters, href)

    def resolve_link(self, href: str | None) -> str | None:
        return resolve_link(self.chapters, href)


def find_chapter(chapters: list[ChapterContainer], href: str) -> ChapterContainer | None:
    """按 original_href 查找章节；允许 text/part001.html 与 part001.html 这类后缀差异。"""
    path, _ = split_href(href)
    path = unquote(path)
    if not path:
        return None
    for chapter in chapters:
        if chapter.original_href == path:
            return chapter
    for chapter in chapters:
        if chapter.original_href.endswith(path) or path.endswith(chapter.original_href):
            return chapter
    return None


def resolve_link(chapters: list[ChapterContainer], href: str | None) -> str | None:
    """把目录 / 章节链接转换为文档内锚点；找不到章节时返回编码后的原链接。"""
    if not href:
        return None
    if href.startswith("#"):
        return href
    chapter = find_chapter(chapters, href)
    if chapter is None:
        return quote_href(href)
    _, fragment = split_href(href)
    return f"#{chapter.scoped_id(fragment)}" if fragment else f"#{chapter.anchor_id}"


def assemble_document(
    package: PackageDocument,
    toc: list[TOCNode],
    config: ReaderConfig | None = None,
    fallback_title: str = "EPUB Book",
) -> AssembledDocument:
    """组装单一文档。单章读取失败只替换为占位片段，不中断整本书。"""
    config = config or ReaderConfig()
    base_dir = package.base_dir
    items = package.spine_items()

    # 章节绝对路径 -> spine 序号，用于把跨章节链接改写为锚点
    chapter_index = {item.path: i for i, item in enumerate(items)}

    chapters: list[ChapterContainer] = []
    extra_css: list[str] = []
    for index, item in enumerate(items):
        chapter = _build_chapter(index, item, base_dir, chapter_index, extra_css)
        chapters.append(chapter)

    css_links = [quote(relative_href(item.path, base_dir), safe="/") for item in package.css_items()]
    for href in extra_css:
        if href not in css_links:
            css_links.append(href)

    failed = sum(1 for c in chapters if c.failed)
    logger.info("assemble  chapters={} failed={} css={}", len(chapters), failed, len(css_links))

    title = package.metadata.title or fallback_title
    markup = _render_html(
        title, package.metadata.author, package.metadata.language, css_links, toc, chapters, config,
    )
    return AssembledDocument(
        title=title,
        author=package.metadata.author,
        base_dir=base_dir,
        chapters=chapters,
        toc=toc,
        css_links=css_links,
        soup=BeautifulSoup(markup, "lxml"),
    )


def _build_chapter(
    index: int,
    item: ManifestItem,
    base_dir: Path,
    chapter_index: dict[Path, int],
    extra_css: list[str],
) -> ChapterContainer:
    original_href = relative_href(item.path, base_dir)

    if item.is_image:
        content = f'<img src="{html.escape(quote(original_href, safe="/"))}" alt=""/>'
        return ChapterContainer(index=index, item_id=item.id, original_href=original_href, content=content)

    try:
        raw = item.path.read_bytes()
        content = extract_body_content(raw, item.path.parent, base_dir, chapter_index, extra_css, index=index)
    except (OSError, ValueError) as e:
        logger.warning("chapter [{}] {} unreadable: {}", index, original_href, e)
        return ChapterContainer(
            index=index, item_id=item.id, original_href=original_href,
            content=FAILED_CHAPTER_HTML, failed=True,
        )
    return ChapterContainer(index=index, item_id=item.id, original_href=original_href, content=content)


def extract_body_content(
    raw: bytes | str,
    chapter_dir: Path,
    base_dir: Path,
    chapter_index: dict[Path, int] | None = None,
    extra_css: list[str] | None = None,
    index: int | None = None,
) -> str:
    """取 <body> 内部 HTML 并改写相对路径。

    chapter_index: 章节绝对路径 -> spine 序号；命中的 <a href> 改写为文档内锚点，
    原始路径保存在 data-href。
    index: 本章序号；给定时作者写的 id 与页内 #锚点 都加上 chapter-N-- 前缀。
    """
    chapter_index = chapter_index or {}
    soup = BeautifulSoup(raw, "lxml")

    if extra_css is not None and soup.head is not None:
        for link in soup.head.find_all("link", href=True):
            if "stylesheet" in (link.get("rel") or []) and not is_external(link["href"]):
                extra_css.append(rebase_href(link["href"], chapter_dir, base_dir))

    body = soup.body or soup
    for tag in body.find_all(True):
        if index is not None and isinstance(tag.get("id"), str) and tag["id"]:
            tag["id"] = scoped_anchor(index, tag["id"])
        for attr in _URL_ATTRS:
            value = tag.get(attr)
            if not isinstance(value, str):
                continue
            if index is not None and value.startswith("#") and len(value) > 1:
                tag[attr] = f"#{scoped_anchor(index, value[1:])}"
                continue
            if is_external(value):
                continue
            if tag.name == "a" and attr == "href":
                target = resolve_href(chapter_dir, value)
                if target in chapter_index:
                    _, fragment = split_href(value)
                    n = chapter_index[target]
                    tag["data-href"] = rebase_href(value, chapter_dir, base_dir)
                    tag["href"] = f"#{scoped_anchor(n, unquote(fragment))}" if fragment else f"#chapter-{n}"
                    continue
            tag[attr] = rebase_href(value, chapter_dir, base_dir)

    return body.decode_contents()


def _render_html(
    title: str,
    author: str | None,
    language: str | None,
    css_links: list[str],
    toc: list[TOCNode],
    chapters: list[ChapterContainer],
    config: ReaderConfig,
) -> str:
    parts: list[str] = [
        "<!DOCTYPE html>",
        f'<html lang="{html.escape(language or "zh-CN")}">',
        "<head>",
        '<meta charset="UTF-8"/>',
        '<meta name="viewport" content="width=device-width, initial-scale=1.0"/>',
        f"<title>{html.escape(title)}</title>",
    ]
    for href in css_links:
        parts.append(f'<link rel="stylesheet" href="{html.escape(href)}"/>')
    parts.append("</head>")
    parts.append("<body>")

    parts.append('<nav class="toc" id="toc"><ol class="toc-list">')
    for node in toc:
        parts.append(_render_toc_node(node, chapters, config))
    parts.append("</ol></nav>")

    parts.append('<main class="epub-container">')
    parts.append('<header class="epub-header">')
    parts.append(f"<h1>{html.escape(title)}</h1>")
    if author:
        parts.append(f'<div class="author">{html.escape(author)}</div>')
    parts.append("</header>")

    for chapter in chapters:
        parts.append(
            f'<div class="chapter" id="{chapter.anchor_id}" '
            f'data-original-href="{html.escape(chapter.original_href)}">'
        )
        parts.append(chapter.content)
        parts.append("</div>")

    parts.append("</main>")
    parts.append("</body>")
    parts.append("</html>")
    return "\n".join(parts)


def _render_toc_node(node: TOCNode, chapters: list[ChapterContainer], config: ReaderConfig) -> str:
    level_class = f"toc-level-{config.clamp_level(node.level)}"
    title = html.escape(node.title)
    target = resolve_link(chapters, node.href)
    if target:
        label = f'<a href="{html.escape(target)}" data-href="{html.escape(node.href or "")}">{title}</a>'
    else:
        # 没有链接的目录项（分组标题）
        label = f"<span>{title}</span>"
    children = ""
    if node.children:
        children = "<ol>" + "".join(_render_toc_node(c, chapters, config) for c in node.children) + "</ol>"
    return f'<li class="{level_class}">{label}{children}</li>'


def chapter_tags(soup: BeautifulSoup) -> list[Tag]:
    """组装结果中的章节容器，按文档顺序（书籍自带的 class="chapter" 不算）。"""
    return soup.find_all("div", attrs={"data-original-href": True})
