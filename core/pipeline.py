"""书籍加载流水线：解包 → 定位 OPF → 解析 → 目录 → 组装 → 段落身份。

各阶段严格串行，前一阶段的产物是后一阶段唯一的输入；
阻塞 I/O 放到线程中执行，事件循环可随时取消整个加载。
每次加载使用新的工作目录，失败或被取消时整个目录直接丢弃，无需回滚。
"""

from __future__ import annotations

import asyncio
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from loguru import logger

from core.config import ReaderConfig
from core.epub.archive import extract_archive
from core.epub.assembler import assemble_document
from core.epub.locator import locate_package
from core.epub.parser import load_package
from core.epub.toc import resolve_toc
from core.errors import ExtractionError
from core.paragraphs.identity import identify_paragraphs
from core.session import DocumentSession

STAGES = ("extract", "locate", "parse", "toc", "assemble", "identify")


@dataclass
class ProgressEvent:
    """进度事件，供 CLI / Web UI 消费。"""
    stage: str
    stage_index: int
    stage_total: int
    status: str  # "running" | "done" | "error" | "cancelled"
    message: str = ""


ProgressCallback = Callable[[ProgressEvent], None]


class BookPipeline:
    def __init__(
        self,
        epub_path: Path,
        config: ReaderConfig | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.epub_path = Path(epub_path)
        self.config = config or ReaderConfig()
        self.on_progress = on_progress or (lambda e: None)
        self.work_dir = self.config.work_dir / uuid.uuid4().hex
        self._pending: asyncio.Future | None = None

    async def run(self) -> DocumentSession:
        """执行完整加载流程，返回新的文档会话。"""
        log_id = None
        if self.config.log_dir is not None:
            self.config.log_dir.mkdir(parents=True, exist_ok=True)
            log_id = logger.add(
                self.config.log_dir / "aireader.log",
                level="DEBUG", encoding="utf-8",
                format="{time:HH:mm:ss.SSS} | {level:<7} | {message}",
                rotation="10 MB", retention=10,
            )

        logger.info("=== 打开 {} ===", self.epub_path.name)
        started = time.monotonic()
        stage = "extract"
        try:
            self._emit(stage, "running")
            try:
                await self._in_thread(
                    extract_archive, self.epub_path, self.work_dir,
                    timeout=self.config.extraction_timeout,
                )
            except asyncio.TimeoutError as e:
                raise ExtractionError(
                    f"extraction exceeded {self.config.extraction_timeout}s: {self.epub_path.name}"
                ) from e
            self._emit(stage, "done")

            stage = "locate"
            self._emit(stage, "running")
            opf_path = await self._in_thread(locate_package, self.work_dir)
            self._emit(stage, "done", str(opf_path.relative_to(self.work_dir)))

            stage = "parse"
            self._emit(stage, "running")
            package = await self._in_thread(load_package, opf_path)
            self._emit(stage, "done", f"spine={len(package.spine)}")

            stage = "toc"
            self._emit(stage, "running")
            toc = await self._in_thread(resolve_toc, package, self.config)
            self._emit(stage, "done", f"nodes={len(toc)}")

            stage = "assemble"
            self._emit(stage, "running")
            document = await self._in_thread(
                assemble_document, package, toc, self.config, self.epub_path.stem,
            )
            self._emit(stage, "done", f"chapters={len(document.chapters)}")

            stage = "identify"
            self._emit(stage, "running")
            paragraphs = await self._in_thread(identify_paragraphs, document.soup, self.config)
            await self._in_thread(document.write)
            self._emit(stage, "done", f"paragraphs={len(paragraphs)}")

            logger.info(
                "=== 加载完成 title={!r} chapters={} paragraphs={} 耗时={:.2f}s ===",
                document.title, len(document.chapters), len(paragraphs), time.monotonic() - started,
            )
        except asyncio.CancelledError:
            logger.info("load cancelled at stage {}: {}", stage, self.epub_path.name)
            self._emit(stage, "cancelled")
            self._discard()
            raise
        except Exception as e:
            logger.error("load failed at stage {}: {}", stage, e)
            self._emit(stage, "error", f"{type(e).__name__}: {e}")
            self._discard()
            raise
        finally:
            if log_id is not None:
                logger.remove(log_id)

        return DocumentSession(
            epub_path=self.epub_path,
            work_dir=self.work_dir,
            package=package,
            toc=toc,
            document=document,
            paragraphs=paragraphs,
            config=self.config,
        )

    def _emit(self, stage: str, status: str, message: str = "") -> None:
        self.on_progress(ProgressEvent(
            stage=stage,
            stage_index=STAGES.index(stage),
            stage_total=len(STAGES),
            status=status,
            message=message,
        ))

    async def _in_thread(self, func, *args, timeout: float | None = None):
        """在线程中执行阻塞阶段。超时或被取消时线程仍会跑完，由 _discard 善后。"""
        future = asyncio.ensure_future(asyncio.to_thread(func, *args))
        self._pending = future
        return await asyncio.wait_for(asyncio.shield(future), timeout)

    def _discard(self) -> None:
        if self.config.keep_work_dir:
            return
        pending = self._pending
        if pending is not None and not pending.done():
            # 线程无法中断，结束后可能又写入了文件，届时再删一次
            pending.add_done_callback(self._discard_after)
        shutil.rmtree(self.work_dir, ignore_errors=True)

    def _discard_after(self, future: asyncio.Future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.debug("abandoned stage finished with {!r}", future.exception())
        shutil.rmtree(self.work_dir, ignore_errors=True)


async def load_book(
    epub_path: str | Path,
    config: ReaderConfig | None = None,
    on_progress: ProgressCallback | None = None,
) -> DocumentSession:
    return await BookPipeline(Path(epub_path), config, on_progress).run()
