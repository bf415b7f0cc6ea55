from __future__ import annotations

import hashlib

from bs4 import BeautifulSoup

from core.config import ReaderConfig
from core.paragraphs.identity import (
    PID_ATTR,
    ParagraphIdentity,
    hash8,
    identify_paragraphs,
    is_current_id,
    is_legacy_id,
    normalize_text,
    parse_identity,
)

DOC = """
<html><body>
<main>
<div class="chapter" id="chapter-0" data-original-href="chap1.html">
  <h1>One</h1>
  <p>  First   paragraph
     of chapter one. </p>
  <p id="authored">Second paragraph.</p>
</div>
<div class="chapter" id="chapter-1" data-original-href="Text/chap2.xhtml">
  <p>Chapter two opens.</p>
</div>
</main>
<p>Outside any chapter.</p>
</body></html>
"""


def _soup() -> BeautifulSoup:
    return BeautifulSoup(DOC, "lxml")


def test_hash8_is_md5_prefix():
    assert hash8("chap1.html") == hashlib.md5(b"chap1.html").hexdigest()[:8]
    assert len(hash8("")) == 8


def test_normalize_text():
    assert normalize_text("  a \n\t b  ") == "a b"


def test_identity_format():
    soup = _soup()
    index = identify_paragraphs(soup)
    first = index.blocks[0]
    expected = "p-" + hash8("chap1.html") + "-0-" + hash8("First paragraph of chapter one.")
    assert first.id == expected
    assert first.chapter_href == "chap1.html"
    assert is_current_id(first.id)

    # 章节内序号：第二章重新从 0 开始
    second_chapter = index.blocks[2]
    assert second_chapter.id.startswith("p-" + hash8("Text/chap2.xhtml") + "-0-")


def test_paragraph_outside_chapter_uses_root():
    index = identify_paragraphs(_soup())
    last = index.blocks[-1]
    assert last.chapter_href is None
    assert last.id.startswith("p-" + hash8("root") + "-0-")


def test_authored_ids_are_kept():
    soup = _soup()
    index = identify_paragraphs(soup)
    tag = soup.find(id="authored")
    assert tag is not None
    assert tag[PID_ATTR] == index.blocks[1].id
    # 没有 id 的段落同时拿到 id
    first = soup.find_all("p")[0]
    assert first["id"] == first[PID_ATTR]


def test_idempotent():
    soup = _soup()
    first = identify_paragraphs(soup).ids()
    html_after_first = str(soup)
    second = identify_paragraphs(soup).ids()
    assert first == second
    assert str(soup) == html_after_first


def test_existing_pid_not_recomputed():
    soup = _soup()
    soup.find_all("p")[0][PID_ATTR] = "p-legacyvalue"
    index = identify_paragraphs(soup)
    assert index.blocks[0].id == "p-legacyvalue"
    # 已有身份的段落仍然占用章节内序号
    assert index.blocks[1].id.split("-")[2] == "1"


def test_deterministic_across_parses():
    assert identify_paragraphs(_soup()).ids() == identify_paragraphs(_soup()).ids()


def test_content_change_changes_identity():
    a = ParagraphIdentity.compute("chap1.html", 0, "hello world")
    b = ParagraphIdentity.compute("chap1.html", 0, "hello   world ")
    c = ParagraphIdentity.compute("chap1.html", 0, "hello there")
    assert a.id == b.id
    assert a.id != c.id


def test_custom_paragraph_tags():
    soup = BeautifulSoup(
        '<div data-original-href="a.html"><p>para</p><blockquote>quote</blockquote></div>', "lxml"
    )
    index = identify_paragraphs(soup, ReaderConfig(paragraph_tags=("p", "blockquote")))
    assert [b.tag.name for b in index] == ["p", "blockquote"]
    assert index.blocks[1].id.split("-")[2] == "1"


def test_index_lookup():
    index = identify_paragraphs(_soup())
    pid = index.blocks[0].id
    assert pid in index
    assert index.get(pid) is index.blocks[0]
    assert index.get("p-missing") is None
    assert len(index) == 4


def test_id_formats():
    assert parse_identity("p-0123abcd-12-89abcdef") == ParagraphIdentity("0123abcd", 12, "89abcdef")
    assert parse_identity("p-79e323a007d0bf6d18abaf067bb5063d-64") is None
    assert is_legacy_id("p-79e323a007d0bf6d18abaf067bb5063d-64")
    assert not is_legacy_id("p-0123abcd-12-89abcdef")
    assert not is_current_id("ai-p-0123abcd-12-89abcdef")
