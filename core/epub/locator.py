"""定位 OPF 包文件：先读 container.xml，再按常见路径逐个探测。"""

from __future__ import annotations

import re
from pathlib import Path

from loguru import logger

from core.epub.utils import iter_local, parse_xml
from core.errors import PackageNotFoundError

CONTAINER_PATH = "META-INF/container.xml"

# 很多 EPUB 的 container.xml 缺失或写错，按顺序兜底
FALLBACK_PATHS: tuple[str, ...] = (
    "OEBPS/content.opf",
    "OPS/content.opf",
    "content.opf",
    "OEBPS/package.opf",
    "OPS/package.opf",
    "package.opf",
)

_FULL_PATH_RE = re.compile(r"""full-path\s*=\s*["']([^"']+)["']""")


def locate_package(root: str | Path) -> Path:
    """返回解包目录下 OPF 文件的路径。

    Raises:
        PackageNotFoundError: 所有策略都失败
    """
    root = Path(root)

    full_path = read_container_full_path(root / CONTAINER_PATH)
    if full_path:
        candidate = root / full_path
        if candidate.is_file():
            return candidate
        logger.warning("container.xml 指向不存在的文件：{}", full_path)

    for rel in FALLBACK_PATHS:
        candidate = root / rel
        if candidate.is_file():
            logger.debug("opf fallback hit: {}", rel)
            return candidate

    raise PackageNotFoundError(f"no package document under {root}")


def read_container_full_path(container_path: Path) -> str | None:
    """取第一个 rootfile 的 full-path；文件缺失或无 rootfile 时返回 None。"""
    try:
        raw = container_path.read_bytes()
    except OSError:
        return None

    root = parse_xml(raw)
    if root is not None:
        for el in iter_local(root, "rootfile"):
            value = (el.get("full-path") or "").strip()
            if value:
                return value
            break

    # XML 彻底坏掉时退回模式匹配
    match = _FULL_PATH_RE.search(raw.decode("utf-8", errors="replace"))
    return match.group(1).strip() if match else None
