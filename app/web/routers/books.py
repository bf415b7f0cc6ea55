"""书籍加载与段落匹配 API 路由。"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import uuid
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import APIRouter, Body, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse, RedirectResponse
from loguru import logger
from sse_starlette.sse import EventSourceResponse

from core.config import ReaderConfig
from core.epub.assembler import OUTPUT_FILENAME
from core.epub.toc import toc_to_dict
from core.errors import ReaderError
from core.paragraphs.matcher import AnnotationRecord
from core.pipeline import BookPipeline, ProgressEvent
from core.session import DocumentSession

router = APIRouter(prefix="/api", tags=["books"])

WORK_DIR = Path(os.environ.get("AIREADER_WORK_DIR") or ReaderConfig().work_dir)

_books: dict[str, dict] = {}


@router.post("/books")
async def open_book(
    file: UploadFile,
    extraction_timeout: float | None = Form(None),
) -> dict:
    """上传 EPUB 并在后台启动加载，返回 book_id。"""
    book_id = str(uuid.uuid4())
    upload_dir = WORK_DIR / "uploads" / book_id
    upload_dir.mkdir(parents=True)

    epub_path = upload_dir / Path(file.filename or "input.epub").name
    epub_path.write_bytes(await file.read())

    config = ReaderConfig(work_dir=WORK_DIR, extraction_timeout=extraction_timeout)
    _books[book_id] = {
        "status": "pending",
        "events": [],
        "filename": epub_path.name,
        "upload_dir": upload_dir,
        "session": None,
    }
    _books[book_id]["task"] = asyncio.create_task(_run_load(book_id, epub_path, config))
    return {"book_id": book_id}


@router.get("/books/{book_id}/progress")
async def get_progress(book_id: str):
    """SSE 流：推送加载阶段事件。"""
    if book_id not in _books:
        raise HTTPException(status_code=404, detail="Book not found")

    async def event_generator() -> AsyncIterator[dict]:
        sent = 0
        while True:
            book = _books.get(book_id, {})
            events = book.get("events", [])
            while sent < len(events):
                yield {"data": json.dumps(events[sent], ensure_ascii=False)}
                sent += 1
            if book.get("status") in ("done", "error", "cancelled") or not book:
                break
            await asyncio.sleep(0.3)

    return EventSourceResponse(event_generator())


@router.get("/books/{book_id}")
async def get_book(book_id: str) -> dict:
    book = _get(book_id)
    result: dict[str, Any] = {
        "book_id": book_id,
        "status": book["status"],
        "filename": book["filename"],
    }
    if book["status"] == "error":
        result["error"] = book.get("error")
    session: DocumentSession | None = book["session"]
    if session is not None:
        doc = session.document
        result.update({
            "title": doc.title,
            "author": doc.author,
            "language": session.package.metadata.language,
            "chapters": len(doc.chapters),
            "failed_chapters": [c.original_href for c in doc.chapters if c.failed],
            "paragraphs": len(session.paragraphs),
            "toc": toc_to_dict(session.toc, session.config.toc_max_level),
        })
    return result


@router.get("/books/{book_id}/document")
async def get_document(book_id: str):
    """跳转到 files/ 下的单文档 HTML，文档里的相对资源路径才能解析到 get_file。"""
    session = _ready(book_id)
    output_path = session.document.output_path
    if not output_path.exists():
        raise HTTPException(status_code=404, detail="Document not found")
    return RedirectResponse(url=f"/api/books/{book_id}/files/{OUTPUT_FILENAME}", status_code=307)


@router.get("/books/{book_id}/files/{path:path}")
async def get_file(book_id: str, path: str):
    """文档引用的图片、样式等资源；只允许访问书籍包目录内的文件。"""
    session = _ready(book_id)
    base_dir = session.document.base_dir.resolve()
    target = (base_dir / path).resolve()
    if not target.is_relative_to(base_dir) or not target.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path=target)


@router.post("/books/{book_id}/matches")
async def match_records(book_id: str, records: list[dict] = Body(...)) -> dict:
    """把外部记录匹配到段落，结果缓存在会话上。"""
    session = _ready(book_id)
    items = [AnnotationRecord.from_payload(r) for r in records]
    results = session.attach(items)
    return {
        "matched": sum(1 for r in results if r.matched),
        "results": [r.as_dict() for r in results],
    }


@router.delete("/books/{book_id}")
async def close_book(book_id: str) -> dict:
    book = _books.pop(book_id, None)
    if book is None:
        raise HTTPException(status_code=404, detail="Book not found")
    task: asyncio.Task | None = book.get("task")
    if task is not None and not task.done():
        task.cancel()
    if book["session"] is not None:
        book["session"].close()
    shutil.rmtree(book["upload_dir"], ignore_errors=True)
    return {"book_id": book_id, "status": "closed"}


def _get(book_id: str) -> dict:
    book = _books.get(book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found")
    return book


def _ready(book_id: str) -> DocumentSession:
    book = _get(book_id)
    if book["status"] == "error":
        raise HTTPException(status_code=422, detail=book.get("error") or "unsupported or corrupted book")
    if book["status"] != "done":
        raise HTTPException(status_code=400, detail="Book not loaded yet")
    return book["session"]


async def _run_load(book_id: str, epub_path: Path, config: ReaderConfig) -> None:
    _books[book_id]["status"] = "running"

    def on_progress(event: ProgressEvent) -> None:
        _books[book_id]["events"].append({
            "stage": event.stage,
            "stage_index": event.stage_index,
            "stage_total": event.stage_total,
            "status": event.status,
            "message": event.message,
        })

    try:
        session = await BookPipeline(epub_path, config, on_progress).run()
    except asyncio.CancelledError:
        if book_id in _books:
            _books[book_id]["status"] = "cancelled"
        raise
    except ReaderError as e:
        _books[book_id]["status"] = "error"
        _books[book_id]["error"] = e.user_message
    except Exception as e:
        logger.exception("unexpected failure loading {}", epub_path.name)
        _books[book_id]["status"] = "error"
        _books[book_id]["error"] = str(e)
    else:
        if book_id not in _books:
            session.close()
            return
        _books[book_id]["session"] = session
        _books[book_id]["status"] = "done"
