from __future__ import annotations

import asyncio

import pytest

from core.errors import ExtractionError, PackageNotFoundError
from core.library import read_book_info
from core.paragraphs.identity import hash8
from core.paragraphs.matcher import AnnotationRecord
from core.pipeline import STAGES, BookPipeline, load_book
from epub_builder import chapter, minimal_files, opf


def _load(epub, config, events=None):
    return asyncio.run(load_book(epub, config, events.append if events is not None else None))


def test_minimal_book_end_to_end(minimal_epub, config):
    events = []
    session = _load(minimal_epub, config, events)
    try:
        assert session.title == "Test Book"
        assert [n.title for n in session.toc] == ["The Beginning", "The Middle"]
        assert [c.item_id for c in session.document.chapters] == ["c1", "c2"]

        first = session.paragraphs.blocks[0]
        assert first.id == "p-" + hash8("chap1.html") + "-0-" + hash8("It was a bright cold day in April.")

        assert session.document.output_path.is_file()
        html = session.document.output_path.read_text(encoding="utf-8")
        assert f'data-pid="{first.id}"' in html
    finally:
        session.close()

    assert [(e.stage, e.status) for e in events if e.status == "done"] == [(s, "done") for s in STAGES]
    assert not session.work_dir.exists()


def test_determinism(minimal_epub, config):
    with _load(minimal_epub, config) as a, _load(minimal_epub, config) as b:
        assert a.work_dir != b.work_dir
        assert a.paragraphs.ids() == b.paragraphs.ids()
        assert [(n.title, n.href) for n in a.toc] == [(n.title, n.href) for n in b.toc]


def test_corrupt_archive_cleans_up(tmp_path, config):
    bogus = tmp_path / "bogus.epub"
    bogus.write_bytes(b"not a zip")
    events = []
    pipeline = BookPipeline(bogus, config, events.append)
    with pytest.raises(ExtractionError):
        asyncio.run(pipeline.run())
    assert events[-1].stage == "extract"
    assert events[-1].status == "error"
    assert not pipeline.work_dir.exists()


def test_missing_package_cleans_up(make_epub, config):
    epub = make_epub({"random/file.txt": "hello"}, opf_path=None)
    pipeline = BookPipeline(epub, config)
    with pytest.raises(PackageNotFoundError):
        asyncio.run(pipeline.run())
    assert not pipeline.work_dir.exists()


def test_keep_work_dir(minimal_epub, config):
    config.keep_work_dir = True
    session = _load(minimal_epub, config)
    session.close()
    assert session.work_dir.exists()


def test_cancellation_cleans_up(minimal_epub, config):
    pipeline = BookPipeline(minimal_epub, config)
    events = []

    async def main():
        task = None

        def on_progress(event):
            events.append(event)
            if event.stage == "toc" and event.status == "running":
                task.cancel()

        pipeline.on_progress = on_progress
        task = asyncio.create_task(pipeline.run())
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(main())
    assert (events[-1].stage, events[-1].status) == ("toc", "cancelled")
    assert not pipeline.work_dir.exists()


def test_extraction_timeout(minimal_epub, config, monkeypatch):
    import time

    import core.pipeline

    def slow_extract(epub_path, dest_dir):
        time.sleep(0.5)
        dest_dir.mkdir(parents=True, exist_ok=True)
        (dest_dir / "late.txt").write_text("x")

    monkeypatch.setattr(core.pipeline, "extract_archive", slow_extract)
    config.extraction_timeout = 0.05
    pipeline = BookPipeline(minimal_epub, config)

    async def main():
        with pytest.raises(ExtractionError):
            await pipeline.run()
        # 等被放弃的解包线程跑完并触发第二次清理
        await asyncio.sleep(1)

    asyncio.run(main())
    assert not pipeline.work_dir.exists()


def test_log_file_written(minimal_epub, config, tmp_path):
    config.log_dir = tmp_path / "logs"
    with _load(minimal_epub, config):
        pass
    log = (config.log_dir / "aireader.log").read_text(encoding="utf-8")
    assert "加载完成" in log


def test_session_attach_and_records(minimal_epub, config):
    with _load(minimal_epub, config) as session:
        target = session.paragraphs.blocks[1]
        results = session.attach([
            AnnotationRecord("r1", "", target.id),
            AnnotationRecord("r2", "clocks were striking"),
            AnnotationRecord("r3", "no such text in this book"),
        ])
        assert [r.matched for r in results] == [True, True, False]
        assert [r.id for r in session.records_for(target.id)] == ["r1"]
        clocks = results[1].block.id
        assert session.annotated_paragraphs() == [target.id, clocks]
        assert session.block(clocks).chapter_href == "chap2.html"

        session.clear_records()
        assert session.records_for(target.id) == []
    assert session.closed


def test_read_book_info(make_epub, config):
    files = minimal_files()
    files["OEBPS/content.opf"] = opf(
        manifest=[
            ("c1", "chap1.html", "application/xhtml+xml"),
            ("c2", "chap2.html", "application/xhtml+xml"),
            ("img", "cover.png", "image/png", "cover-image"),
        ],
        spine=["c1", "c2"],
        title="Covered",
        author="Someone",
    )
    files["OEBPS/cover.png"] = b"\x89PNG fake"
    info = read_book_info(make_epub(files), config)
    assert info.title == "Covered"
    assert info.author == "Someone"
    assert info.cover_bytes == b"\x89PNG fake"
    assert info.cover_media_type == "image/png"
    assert info.page_count == 2
    assert list(config.work_dir.iterdir()) == []


def test_read_book_info_degrades(tmp_path, make_epub, config):
    bogus = tmp_path / "broken.epub"
    bogus.write_bytes(b"garbage")
    info = read_book_info(bogus, config)
    assert info.title == "broken.epub"
    assert info.cover_bytes is None

    untitled = make_epub({
        "OEBPS/content.opf": opf(manifest=[], spine=[], title=None),
        "OEBPS/x.html": chapter("x"),
    }, name="untitled.epub")
    assert read_book_info(untitled, config).title == "untitled.epub"
