"""EPUB 解包：把 ZIP 归档完整释放到工作目录。"""

from __future__ import annotations

import zipfile
import zlib
from pathlib import Path

from loguru import logger

from core.errors import ExtractionError


def extract_archive(epub_path: str | Path, dest_dir: str | Path) -> Path:
    """解压 EPUB 到 dest_dir，保留相对路径，已存在的文件直接覆盖。

    目录的清理由调用方负责（通常每次加载一个新的临时目录）。

    Raises:
        ExtractionError: 文件不存在 / 归档损坏 / 目标不可写 / 条目越界
    """
    epub_path = Path(epub_path)
    dest_dir = Path(dest_dir)

    if not epub_path.is_file():
        raise ExtractionError(f"archive not found: {epub_path}")

    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ExtractionError(f"cannot create {dest_dir}: {e}") from e

    root = dest_dir.resolve()
    count = 0
    try:
        with zipfile.ZipFile(epub_path, "r") as zf:
            for info in zf.infolist():
                target = (root / info.filename).resolve()
                # 防止 ../ 之类的条目写到目录外
                if target != root and root not in target.parents:
                    raise ExtractionError(f"entry escapes destination: {info.filename}")
                zf.extract(info, root)
                count += 1
    except (zipfile.BadZipFile, zlib.error, EOFError) as e:
        raise ExtractionError(f"corrupt archive {epub_path.name}: {e}") from e
    except (RuntimeError, NotImplementedError) as e:
        # 加密条目、不支持的压缩算法
        raise ExtractionError(f"unsupported archive {epub_path.name}: {e}") from e
    except OSError as e:
        raise ExtractionError(f"cannot extract {epub_path.name}: {e}") from e

    logger.debug("extract  {} entries -> {}", count, root)
    return root
