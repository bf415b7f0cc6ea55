"""aireader CLI 入口。

命令：
  air <epub>                 打开 EPUB 并生成单文档 HTML（简写）
  air open <epub>            同上，支持所有选项
  air toc <epub>             以树形显示目录
  air info <epub>            显示书籍元数据
  air match <epub> <json>    把外部批注 / 对话记录匹配到段落
  air serve                  启动 Web API
"""

from __future__ import annotations

import asyncio
import json
import shutil
import sys
from pathlib import Path
from typing import Optional

import typer

# 若第一个参数看起来是 epub 文件（而非子命令），自动补全 "open"
# 使得 `air book.epub` 等价于 `air open book.epub`
_SUBCOMMANDS = {"open", "toc", "info", "match", "serve", "--help", "-h", "--version"}
if len(sys.argv) > 1 and sys.argv[1] not in _SUBCOMMANDS and sys.argv[1].endswith(".epub"):
    sys.argv.insert(1, "open")
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.tree import Tree

from loguru import logger

from core.config import ReaderConfig
from core.epub.toc import TOCNode, toc_to_dict
from core.errors import ReaderError
from core.library import read_book_info
from core.paragraphs.matcher import AnnotationRecord
from core.pipeline import ProgressEvent, load_book
from core.session import DocumentSession

app = typer.Typer(
    name="air",
    help="aireader: EPUB 解析、单文档组装与段落身份匹配",
    add_completion=False,
)
console = Console()

# 移除 loguru 默认的 stderr handler，改为通过 Rich Console 输出
logger.remove()
_log_id = logger.add(
    lambda msg: console.log(msg, end=""),
    format="<green>{time:HH:mm:ss}</green> | <level>{level:<7}</level> | {message}",
    level="WARNING",
    colorize=True,
)


def _set_verbose(verbose: bool) -> None:
    global _log_id
    if not verbose:
        return
    logger.remove(_log_id)
    _log_id = logger.add(
        lambda msg: console.log(msg, end=""),
        format="<green>{time:HH:mm:ss}</green> | <level>{level:<7}</level> | {message}",
        level="DEBUG",
        colorize=True,
    )


def _make_config(work_dir: Optional[Path], timeout: Optional[float], log_dir: Optional[Path]) -> ReaderConfig:
    config = ReaderConfig(extraction_timeout=timeout, log_dir=log_dir)
    if work_dir is not None:
        config.work_dir = work_dir
    return config


def _load(epub: Path, config: ReaderConfig) -> DocumentSession:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("加载", total=None)

        def on_progress(event: ProgressEvent) -> None:
            done = event.stage_index + (1 if event.status == "done" else 0)
            progress.update(task, total=event.stage_total, completed=done, description=f"{event.stage}")

        try:
            return asyncio.run(load_book(epub, config, on_progress))
        except ReaderError as e:
            console.print(f"[red]{e.user_message}[/red]：{e}")
            raise typer.Exit(1)


@app.command("open")
def open_book(
    epub: Path = typer.Argument(..., help="输入 EPUB 文件路径", exists=True, dir_okay=False),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="把解包目录（含 index.html）复制到此处"),
    work_dir: Optional[Path] = typer.Option(None, "--work-dir", help="工作目录", envvar="AIREADER_WORK_DIR"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="解包超时（秒）"),
    log_dir: Optional[Path] = typer.Option(None, "--log-dir", help="写入运行日志的目录"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="输出调试日志"),
) -> None:
    """打开 EPUB，生成可直接渲染的单文档 HTML。"""
    _set_verbose(verbose)
    config = _make_config(work_dir, timeout, log_dir)

    console.print("\n[bold]aireader[/bold]")
    console.print(f"  输入：{epub}")

    session = _load(epub, config)
    with session:
        doc = session.document
        failed = sum(1 for c in doc.chapters if c.failed)
        console.print(f"  标题：{doc.title}")
        console.print(f"  作者：{doc.author or '-'}")
        console.print(f"  章节：{len(doc.chapters)}  失败：{failed}  段落：{len(session.paragraphs)}")

        if output is None:
            session.config.keep_work_dir = True
            console.print(f"\n[green]✓ 已生成[/green] → {doc.output_path}")
            return

        target = output / doc.base_dir.relative_to(session.work_dir)
        shutil.copytree(session.work_dir, output, dirs_exist_ok=True)
        console.print(f"\n[green]✓ 已生成[/green] → {target / doc.output_path.name}")


@app.command()
def toc(
    epub: Path = typer.Argument(..., help="输入 EPUB 文件路径", exists=True, dir_okay=False),
    work_dir: Optional[Path] = typer.Option(None, "--work-dir", help="工作目录", envvar="AIREADER_WORK_DIR"),
    as_json: bool = typer.Option(False, "--json", help="以 JSON 输出"),
) -> None:
    """显示目录结构。"""
    config = _make_config(work_dir, None, None)
    with _load(epub, config) as session:
        if as_json:
            console.print_json(json.dumps(toc_to_dict(session.toc, config.toc_max_level), ensure_ascii=False))
            return
        tree = Tree(f"[bold]{session.title}[/bold]")
        _add_nodes(tree, session.toc)
        console.print(tree)


def _add_nodes(parent: Tree, nodes: list[TOCNode]) -> None:
    for node in nodes:
        label = node.title if not node.href else f"{node.title} [dim]{node.href}[/dim]"
        _add_nodes(parent.add(label), node.children)


@app.command()
def info(
    epub: Path = typer.Argument(..., help="输入 EPUB 文件路径", exists=True, dir_okay=False),
    work_dir: Optional[Path] = typer.Option(None, "--work-dir", help="工作目录", envvar="AIREADER_WORK_DIR"),
) -> None:
    """显示书籍元数据（导入书库时使用的信息）。"""
    book = read_book_info(epub, _make_config(work_dir, None, None))
    table = Table(title="书籍信息", show_header=False)
    table.add_column("字段", style="cyan", width=10)
    table.add_column("值", style="white")
    table.add_row("标题", book.title)
    table.add_row("作者", book.author or "-")
    table.add_row("语言", book.language or "-")
    table.add_row("封面", f"{book.cover_media_type} ({len(book.cover_bytes)} bytes)" if book.cover_bytes else "-")
    table.add_row("页数", str(book.page_count))
    console.print(table)


@app.command()
def match(
    epub: Path = typer.Argument(..., help="输入 EPUB 文件路径", exists=True, dir_okay=False),
    records: Path = typer.Argument(..., help="记录 JSON 文件（列表，含 id / paragraphId / relatedText）", exists=True),
    work_dir: Optional[Path] = typer.Option(None, "--work-dir", help="工作目录", envvar="AIREADER_WORK_DIR"),
) -> None:
    """把外部记录匹配到当前文档的段落。"""
    try:
        payload = json.loads(records.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]无法读取记录文件：{e}[/red]")
        raise typer.Exit(1)
    if not isinstance(payload, list):
        console.print("[red]记录文件必须是 JSON 列表[/red]")
        raise typer.Exit(1)

    items = [AnnotationRecord.from_payload(p) for p in payload if isinstance(p, dict)]
    with _load(epub, _make_config(work_dir, None, None)) as session:
        results = session.attach(items)

    table = Table(title="匹配结果", show_header=True)
    table.add_column("记录", style="cyan")
    table.add_column("段落", style="white")
    table.add_column("方式", style="green")
    for result in results:
        table.add_row(
            result.record_id,
            result.block.id if result.block else "[dim]未匹配[/dim]",
            result.strategy or "-",
        )
    console.print(table)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="监听地址"),
    port: int = typer.Option(8000, "--port", help="监听端口"),
) -> None:
    """启动 Web API。"""
    import uvicorn

    uvicorn.run("app.web.app:app", host=host, port=port)
