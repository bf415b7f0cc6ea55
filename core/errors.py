"""加载流水线的错误类型。

只有 ExtractionError / PackageNotFoundError 会中止一次加载；
其余问题（单章读取失败、目录缺失、批注无法匹配）都在本地降级处理。
"""

from __future__ import annotations


class ReaderError(Exception):
    """所有致命加载错误的基类，附带面向用户的提示。"""

    user_message = "could not load book"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.user_message)
        self.detail = detail


class ExtractionError(ReaderError):
    """归档损坏、不可读，或目标目录不可写。"""

    user_message = "could not open file"


class PackageNotFoundError(ReaderError):
    """任何策略都找不到 OPF 包文件。"""

    user_message = "unsupported or corrupted book"
