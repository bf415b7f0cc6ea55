"""导入书库时读取的元数据：标题、作者、封面、页数估算。"""

from __future__ import annotations

import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from core.config import ReaderConfig
from core.epub.archive import extract_archive
from core.epub.locator import locate_package
from core.epub.parser import load_package
from core.errors import ReaderError


@dataclass
class BookInfo:
    title: str
    author: str | None = None
    language: str | None = None
    cover_bytes: bytes | None = field(default=None, repr=False)
    cover_media_type: str | None = None
    page_count: int = 1


def read_book_info(epub_path: str | Path, config: ReaderConfig | None = None) -> BookInfo:
    """读取书籍基本信息。书籍损坏时退化为只有文件名的信息，不抛异常。"""
    config = config or ReaderConfig()
    epub_path = Path(epub_path)
    fallback = BookInfo(title=epub_path.name)

    config.work_dir.mkdir(parents=True, exist_ok=True)
    tmp_dir = Path(tempfile.mkdtemp(prefix="info-", dir=config.work_dir))
    try:
        extract_archive(epub_path, tmp_dir)
        package = load_package(locate_package(tmp_dir))
    except ReaderError as e:
        logger.warning("cannot read metadata of {}: {}", epub_path.name, e)
        shutil.rmtree(tmp_dir, ignore_errors=True)
        return fallback
    except OSError as e:
        logger.warning("cannot read package of {}: {}", epub_path.name, e)
        shutil.rmtree(tmp_dir, ignore_errors=True)
        return fallback

    try:
        cover_bytes = None
        cover_type = None
        cover = package.cover_item()
        if cover is not None:
            try:
                cover_bytes = cover.path.read_bytes()
                cover_type = cover.media_type or None
            except OSError:
                logger.debug("cover {} missing on disk", cover.href)

        return BookInfo(
            title=package.metadata.title or epub_path.name,
            author=package.metadata.author,
            language=package.metadata.language,
            cover_bytes=cover_bytes,
            cover_media_type=cover_type,
            page_count=package.page_estimate,
        )
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)
