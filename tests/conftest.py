from __future__ import annotations

from pathlib import Path

import pytest

from core.config import ReaderConfig
from epub_builder import minimal_files, write_epub


@pytest.fixture
def config(tmp_path: Path) -> ReaderConfig:
    return ReaderConfig(work_dir=tmp_path / "work")


@pytest.fixture
def make_epub(tmp_path: Path):
    def _make(files: dict, name: str = "book.epub", opf_path: str | None = "OEBPS/content.opf") -> Path:
        return write_epub(tmp_path / "input" / name, files, opf_path=opf_path)
    return _make


@pytest.fixture
def minimal_epub(make_epub) -> Path:
    return make_epub(minimal_files())
