"""全局配置模型。"""

from __future__ import annotations

import tempfile
from dataclasses import dataclass, field
from pathlib import Path

# 旧版快照里可能混入的段落操作按钮文字，文本匹配前从末尾剥离
DEFAULT_ACTION_LABELS: tuple[str, ...] = (
    "解释", "总结", "翻译", "分析",
    "explain", "summarize", "translate", "analyze",
)


@dataclass
class ReaderConfig:
    # 每次加载在 work_dir 下新建独立子目录
    work_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "aireader")
    keep_work_dir: bool = False
    extraction_timeout: float | None = None   # None 表示不限时

    # 目录
    title_scan_chars: int = 5000    # 推断章节标题时只扫描文件开头
    toc_max_level: int = 3          # 展示层级上限，内部保留原始层级

    # 段落身份
    paragraph_tags: tuple[str, ...] = ("p",)
    action_labels: tuple[str, ...] = DEFAULT_ACTION_LABELS

    # 日志：为空则不写文件
    log_dir: Path | None = None

    def clamp_level(self, level: int) -> int:
        return max(1, min(level, self.toc_max_level))
