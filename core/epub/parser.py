"""OPF 包文件解析：读取 metadata / manifest / spine。

真实世界的 OPF 经常不是合法 XML（未转义实体、奇怪的命名空间），
这里用 lxml 的 recover 模式并按本地名匹配元素，只求把需要的事实取出来。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from urllib.parse import unquote

from loguru import logger

from core.epub.utils import HTML_MEDIA_TYPES, is_html_path, iter_local, parse_xml, resolve_href

NCX_MEDIA_TYPE = "application/x-dtbncx+xml"


@dataclass(frozen=True)
class ManifestItem:
    id: str
    href: str          # 百分号解码后的 href，相对于 OPF 所在目录
    path: Path         # 资源绝对路径
    media_type: str
    properties: tuple[str, ...] = ()

    @property
    def is_html(self) -> bool:
        return self.media_type in HTML_MEDIA_TYPES or is_html_path(self.href)

    @property
    def is_image(self) -> bool:
        return self.media_type.startswith("image/")

    @property
    def inferred_title(self) -> str:
        """由文件名推断的标题，如 chap1.html -> Chap1。"""
        return PurePosixPath(self.href).stem.capitalize()


@dataclass
class BookMetadata:
    title: str | None = None
    author: str | None = None
    language: str | None = None


@dataclass
class PackageDocument:
    opf_path: Path | None
    base_dir: Path       # OPF 所在目录，所有 href 相对于它
    metadata: BookMetadata
    manifest: dict[str, ManifestItem]   # id -> item，保持文档顺序
    spine: list[str]                    # 仅包含能在 manifest 中找到的 idref
    toc_id: str | None = None           # <spine toc="..."> 指向的 NCX id
    cover_id: str | None = None         # <meta name="cover" content="..."> 指向的 id
    dropped_idrefs: list[str] = field(default_factory=list)

    def spine_items(self) -> list[ManifestItem]:
        return [self.manifest[idref] for idref in self.spine]

    def html_items(self) -> list[ManifestItem]:
        return [item for item in self.manifest.values() if item.is_html]

    def css_items(self) -> list[ManifestItem]:
        """manifest 中声明且磁盘上存在的样式表。"""
        return [
            item for item in self.manifest.values()
            if (item.media_type == "text/css" or item.href.lower().endswith(".css"))
            and item.path.is_file()
        ]

    def cover_item(self) -> ManifestItem | None:
        """依次尝试 EPUB3 cover-image、EPUB2 <meta name="cover">、id=cover、文件名含 cover 的图片。"""
        for item in self.manifest.values():
            if "cover-image" in item.properties:
                return item
        if self.cover_id and self.cover_id in self.manifest:
            return self.manifest[self.cover_id]
        item = self.manifest.get("cover")
        if item is not None and item.is_image:
            return item
        for item in self.manifest.values():
            if item.is_image and ("cover" in item.id.lower() or "cover" in item.href.lower()):
                return item
        return None

    @property
    def page_estimate(self) -> int:
        return max(1, len(self.spine))


def load_package(opf_path: str | Path) -> PackageDocument:
    """读取并解析磁盘上的 OPF 文件。"""
    opf_path = Path(opf_path)
    return parse_package(opf_path.read_bytes(), opf_path.parent, opf_path=opf_path)


def parse_package(
    opf_content: bytes | str, base_dir: str | Path, opf_path: Path | None = None
) -> PackageDocument:
    """解析 OPF 内容；base_dir 用于解析相对 href。

    格式再差也不抛异常：解析不出的部分留空。
    """
    base_dir = Path(base_dir)
    if isinstance(opf_content, str):
        opf_content = opf_content.encode("utf-8")

    root = parse_xml(opf_content)
    if root is None:
        logger.warning("OPF 无法解析：{}", opf_path or base_dir)
        return PackageDocument(
            opf_path=opf_path, base_dir=base_dir, metadata=BookMetadata(), manifest={}, spine=[],
        )

    # 元数据
    metadata = BookMetadata(
        title=_first_text(root, "title"),
        author=_first_text(root, "creator"),
        language=_first_text(root, "language"),
    )

    cover_id: str | None = None
    for meta in iter_local(root, "meta"):
        if (meta.get("name") or "").lower() == "cover" and meta.get("content"):
            cover_id = meta.get("content").strip()
            break

    # manifest
    manifest: dict[str, ManifestItem] = {}
    for item in iter_local(root, "item"):
        item_id = (item.get("id") or "").strip()
        href = (item.get("href") or "").strip()
        if not item_id or not href:
            continue
        manifest[item_id] = ManifestItem(
            id=item_id,
            href=unquote(href),
            path=resolve_href(base_dir, href),
            media_type=(item.get("media-type") or "").strip().lower(),
            properties=tuple((item.get("properties") or "").split()),
        )

    # spine
    toc_id: str | None = None
    for spine_el in iter_local(root, "spine"):
        toc_id = (spine_el.get("toc") or "").strip() or None
        break

    spine: list[str] = []
    dropped: list[str] = []
    for itemref in iter_local(root, "itemref"):
        idref = (itemref.get("idref") or "").strip()
        if not idref:
            continue
        if idref in manifest:
            spine.append(idref)
        else:
            dropped.append(idref)

    if dropped:
        logger.warning("spine 中 {} 个 idref 无法解析，已丢弃：{}", len(dropped), dropped[:5])

    logger.debug(
        "opf  title={!r} manifest={} spine={} toc={}",
        metadata.title, len(manifest), len(spine), toc_id,
    )
    return PackageDocument(
        opf_path=opf_path,
        base_dir=base_dir,
        metadata=metadata,
        manifest=manifest,
        spine=spine,
        toc_id=toc_id,
        cover_id=cover_id,
        dropped_idrefs=dropped,
    )


def _first_text(root, name: str) -> str | None:
    el = next(iter_local(root, name), None)
    if el is None:
        return None
    return "".join(el.itertext()).strip() or None
