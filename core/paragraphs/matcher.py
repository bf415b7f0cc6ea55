"""把外部存储的批注 / 对话记录重新挂到当前文档的段落上。

优先级：
  1. paragraphId 精确命中
  2. 旧格式 id：取旧 MD5 前 8 位作为桥接前缀，匹配 contentHash；失败即放弃，不做文本匹配
  3. 当前格式 id 找不到：章节已变化，放弃
  4. 未知格式或无 id：模糊文本匹配
匹配失败的记录只是本次不显示，仍保留在外部存储里。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from loguru import logger

from core.config import ReaderConfig
from core.paragraphs.identity import (
    LEGACY_ID_RE,
    ParagraphBlock,
    ParagraphIndex,
    is_current_id,
    match_key,
)

MIN_RECORD_CHARS = 2     # 记录文本太短不参与匹配
MIN_BLOCK_CHARS = 5      # 段落太短容易误匹配，跳过
SUPERSET_MIN_CHARS = 10  # “记录包含段落”只在记录足够长时成立


@dataclass
class AnnotationRecord:
    id: str
    related_text: str = ""
    paragraph_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> AnnotationRecord:
        """兼容 camelCase / snake_case 两种字段名。"""
        pid = payload.get("paragraphId", payload.get("paragraph_id"))
        text = payload.get("relatedText", payload.get("related_text", payload.get("text", "")))
        return cls(
            id=str(payload.get("id", "")),
            related_text=text if isinstance(text, str) else "",
            paragraph_id=pid if isinstance(pid, str) and pid else None,
            payload=dict(payload),
        )


@dataclass
class MatchResult:
    record_id: str
    block: ParagraphBlock | None = None
    strategy: str | None = None    # "exact" | "bridge" | "text" | None

    @property
    def matched(self) -> bool:
        return self.block is not None

    def as_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "paragraph_id": self.block.id if self.block else None,
            "strategy": self.strategy,
        }


def match_record(
    index: ParagraphIndex, record: AnnotationRecord, config: ReaderConfig | None = None
) -> MatchResult:
    """为单条记录找段落。只读 index，不修改任何段落状态。"""
    config = config or ReaderConfig()
    pid = record.paragraph_id

    if pid:
        block = index.get(pid)
        if block is not None:
            return MatchResult(record.id, block, "exact")

        legacy = LEGACY_ID_RE.match(pid)
        if legacy:
            prefix = legacy.group(1)[:8]
            for block in index:
                if block.content_hash == prefix:
                    logger.debug("bridge match {} -> {}", pid, block.id)
                    return MatchResult(record.id, block, "bridge")
            logger.debug("bridge match failed for {}, chapter may have changed", pid)
            return MatchResult(record.id)

        if is_current_id(pid):
            logger.debug("paragraph {} not in current document", pid)
            return MatchResult(record.id)

        logger.debug("unknown id format {!r}, falling back to text match", pid)

    block = match_text(index, record.related_text, config.action_labels)
    if block is not None:
        return MatchResult(record.id, block, "text")
    return MatchResult(record.id)


def match_records(
    index: ParagraphIndex, records: Iterable[AnnotationRecord], config: ReaderConfig | None = None
) -> list[MatchResult]:
    config = config or ReaderConfig()
    results = [match_record(index, record, config) for record in records]
    matched = sum(1 for r in results if r.matched)
    logger.info("match  records={} matched={}", len(results), matched)
    return results


def strip_action_labels(text: str, labels: Iterable[str]) -> str:
    """去掉旧快照末尾误收录的按钮文字（如“解释”“explain”）。"""
    for label in labels:
        if text.endswith(label):
            text = text[: -len(label)].strip()
    return text


def match_text(
    index: ParagraphIndex, text: str | None, action_labels: Iterable[str] = ()
) -> ParagraphBlock | None:
    """按文档顺序找第一个与记录文本互相包含的段落。"""
    needle = match_key(strip_action_labels(text or "", action_labels))
    if len(needle) < MIN_RECORD_CHARS:
        return None

    for block in index:
        haystack = block.match_text
        if len(haystack) < MIN_BLOCK_CHARS:
            continue
        # 记录是段落中的一段选区
        if needle in haystack:
            return block
        # 记录是整段加上多余内容
        if len(needle) > SUPERSET_MIN_CHARS and haystack in needle:
            return block
    return None
