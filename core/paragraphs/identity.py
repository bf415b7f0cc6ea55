"""段落稳定身份。

格式：p-{chapterHash8}-{indexInChapter}-{contentHash8}
  - chapterHash8：章节 data-original-href（无章节时为 "root"）MD5 的前 8 位
  - indexInChapter：段落在本章内的序号（不是全书序号，增删其他章节不影响）
  - contentHash8：空白折叠并去首尾后的段落文本 MD5 前 8 位
内容改动后身份随之改变，旧记录只能靠文本匹配找回。

旧格式（迁移前）：p-{全文 MD5 32 位}-{全书序号}，不再生成，只在匹配时识别。
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field

from bs4 import BeautifulSoup, Tag
from loguru import logger

from core.config import ReaderConfig

ROOT_CHAPTER = "root"

# 段落已分配身份的标记，同时保存身份字符串
PID_ATTR = "data-pid"
CHAPTER_ATTR = "data-original-href"

CURRENT_ID_RE = re.compile(r"^p-([0-9a-f]{8})-(\d+)-([0-9a-f]{8})$")
LEGACY_ID_RE = re.compile(r"^p-([0-9a-f]{32})-(\d+)$")

_WS_RE = re.compile(r"\s+")


def hash8(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()[:8]


def normalize_text(text: str) -> str:
    """空白折叠为单个空格并去首尾，用于内容哈希。"""
    return _WS_RE.sub(" ", text).strip()


def match_key(text: str) -> str:
    """去掉全部空白并转小写，用于模糊文本匹配。"""
    return _WS_RE.sub("", text).lower()


@dataclass(frozen=True)
class ParagraphIdentity:
    chapter_hash: str
    index_in_chapter: int
    content_hash: str

    @property
    def id(self) -> str:
        return f"p-{self.chapter_hash}-{self.index_in_chapter}-{self.content_hash}"

    @classmethod
    def compute(cls, chapter_href: str | None, index_in_chapter: int, text: str) -> ParagraphIdentity:
        return cls(
            chapter_hash=hash8(chapter_href or ROOT_CHAPTER),
            index_in_chapter=index_in_chapter,
            content_hash=hash8(normalize_text(text)),
        )


def parse_identity(paragraph_id: str) -> ParagraphIdentity | None:
    """解析当前格式的身份字符串；其他格式返回 None。"""
    m = CURRENT_ID_RE.match(paragraph_id or "")
    if not m:
        return None
    return ParagraphIdentity(chapter_hash=m.group(1), index_in_chapter=int(m.group(2)), content_hash=m.group(3))


def is_current_id(paragraph_id: str | None) -> bool:
    return bool(paragraph_id) and CURRENT_ID_RE.match(paragraph_id) is not None


def is_legacy_id(paragraph_id: str | None) -> bool:
    return bool(paragraph_id) and LEGACY_ID_RE.match(paragraph_id) is not None


@dataclass
class ParagraphBlock:
    """组装文档中一个段落的扁平记录；匹配算法只读这些字段。"""
    position: int              # 全文档顺序
    chapter_href: str | None
    id: str
    text: str = field(repr=False)
    tag: Tag | None = field(default=None, repr=False, compare=False)
    normalized_text: str = field(init=False, repr=False)
    match_text: str = field(init=False, repr=False)
    content_hash: str | None = field(init=False)

    def __post_init__(self) -> None:
        self.normalized_text = normalize_text(self.text)
        self.match_text = match_key(self.text)
        identity = parse_identity(self.id)
        self.content_hash = identity.content_hash if identity else None


class ParagraphIndex:
    """段落的有序列表 + id 索引。构建后只读，可被多次匹配并发读取。"""

    def __init__(self, blocks: list[ParagraphBlock]) -> None:
        self.blocks = blocks
        self._by_id: dict[str, ParagraphBlock] = {}
        for block in blocks:
            # 同一身份重复出现时保留第一个
            self._by_id.setdefault(block.id, block)

    def __len__(self) -> int:
        return len(self.blocks)

    def __iter__(self):
        return iter(self.blocks)

    def __contains__(self, paragraph_id: object) -> bool:
        return paragraph_id in self._by_id

    def get(self, paragraph_id: str) -> ParagraphBlock | None:
        return self._by_id.get(paragraph_id)

    def ids(self) -> list[str]:
        return [b.id for b in self.blocks]


def identify_paragraphs(soup: BeautifulSoup, config: ReaderConfig | None = None) -> ParagraphIndex:
    """为尚未初始化的段落分配身份，并返回全部段落的索引。

    已带 data-pid 的段落不重新计算（幂等）。身份写入 data-pid；
    段落本身没有 id 时同时写入 id，书中原有的 id 保留给锚点导航使用。
    """
    config = config or ReaderConfig()
    tags = config.paragraph_tags

    blocks: list[ParagraphBlock] = []
    chapter_counters: dict[int, int] = {}
    assigned = 0

    for position, p in enumerate(soup.find_all(list(tags))):
        chapter = p.find_parent(attrs={CHAPTER_ATTR: True})
        chapter_href = chapter.get(CHAPTER_ATTR) if chapter is not None else None

        key = id(chapter) if chapter is not None else 0
        index_in_chapter = chapter_counters.get(key, 0)
        chapter_counters[key] = index_in_chapter + 1

        text = p.get_text()
        pid = p.get(PID_ATTR)
        if not pid:
            pid = ParagraphIdentity.compute(chapter_href, index_in_chapter, text).id
            p[PID_ATTR] = pid
            if not p.get("id"):
                p["id"] = pid
            assigned += 1

        blocks.append(ParagraphBlock(
            position=position,
            chapter_href=chapter_href,
            id=pid,
            text=text,
            tag=p,
        ))

    logger.debug("paragraphs  total={} newly_identified={}", len(blocks), assigned)
    return ParagraphIndex(blocks)
