"""一次打开书籍的会话：持有本次加载产生的全部产物。

段落 -> 记录 的缓存挂在会话上，随会话创建、随 close() / 重新加载丢弃，
不使用进程级全局状态。
"""

from __future__ import annotations

import shutil
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from loguru import logger

from core.config import ReaderConfig
from core.epub.assembler import AssembledDocument
from core.epub.parser import PackageDocument
from core.epub.toc import TOCNode
from core.paragraphs.identity import ParagraphBlock, ParagraphIndex
from core.paragraphs.matcher import AnnotationRecord, MatchResult, match_records


@dataclass
class DocumentSession:
    epub_path: Path
    work_dir: Path
    package: PackageDocument
    toc: list[TOCNode]
    document: AssembledDocument
    paragraphs: ParagraphIndex
    config: ReaderConfig = field(default_factory=ReaderConfig)
    _records: dict[str, list[AnnotationRecord]] = field(
        default_factory=lambda: defaultdict(list), repr=False,
    )
    closed: bool = False

    @property
    def title(self) -> str:
        return self.document.title

    @property
    def author(self) -> str | None:
        return self.document.author

    def block(self, paragraph_id: str) -> ParagraphBlock | None:
        return self.paragraphs.get(paragraph_id)

    def attach(self, records: Iterable[AnnotationRecord]) -> list[MatchResult]:
        """匹配一批外部记录并缓存到对应段落；未匹配的记录直接跳过。"""
        records = list(records)
        results = match_records(self.paragraphs, records, self.config)
        for record, result in zip(records, results):
            if result.block is not None:
                self._records[result.block.id].append(record)
        return results

    def records_for(self, paragraph_id: str) -> list[AnnotationRecord]:
        return list(self._records.get(paragraph_id, ()))

    def annotated_paragraphs(self) -> list[str]:
        return [pid for pid, records in self._records.items() if records]

    def clear_records(self) -> None:
        self._records.clear()

    def close(self) -> None:
        """丢弃缓存，删除本次加载的工作目录。"""
        if self.closed:
            return
        self.closed = True
        self._records.clear()
        if not self.config.keep_work_dir:
            shutil.rmtree(self.work_dir, ignore_errors=True)
            logger.debug("session closed, removed {}", self.work_dir)

    def __enter__(self) -> DocumentSession:
        return self

    def __exit__(self, *exc) -> None:
        self.close()
