"""Tests for context assembly: part order, history window and attachment parts."""

import io
import zipfile
from types import SimpleNamespace
from unittest.mock import Mock

from openpyxl import Workbook

from chatgate.config import DEFAULT_SYSTEM_PROMPT
from chatgate.service.attachments import ProcessedAttachment
from chatgate.service.context import (
    ContextAssembler,
    InlineBinaryPart,
    TextPart,
    extract_ooxml_text,
)

DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
PPTX = "application/vnd.openxmlformats-officedocument.presentationml.presentation"


def _attachment(name, mime_type, data):
    return ProcessedAttachment(
        id=name, name=name, mime_type=mime_type, size_bytes=len(data), inline_data=data
    )


def _docx(*paragraphs: str) -> bytes:
    body = "".join(f"<w:p><w:r><w:t>{text}</w:t></w:r></w:p>" for text in paragraphs)
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("[Content_Types].xml", "<Types/>")
        archive.writestr(
            "word/document.xml",
            f'<w:document xmlns:w="urn:w"><w:body>{body}</w:body></w:document>',
        )
    return buffer.getvalue()


def _seed_session(store, turns: int):
    user = store.create_user("ctx@example.com")
    chat = store.create_chat_session(user.id, title="ctx")
    for idx in range(turns):
        role = "user" if idx % 2 == 0 else "assistant"
        store.append_message(chat.id, role, f"turn {idx}")
    return user, chat


def test_part_order_instruction_history_attachments_message(settings, memory_store):
    user, chat = _seed_session(memory_store, 4)
    assembler = ContextAssembler(memory_store, settings)
    attachments = [
        _attachment("photo.png", "image/png", b"\x89PNG"),
        _attachment("notes.txt", "text/plain", b"remember the milk"),
    ]

    parts = assembler.assemble(chat.id, "What now?", attachments, owner_id=user.id)

    assert parts[0] == TextPart(DEFAULT_SYSTEM_PROMPT, kind="instruction")
    assert [p.text for p in parts[1:5]] == [
        "User: turn 0",
        "Assistant: turn 1",
        "User: turn 2",
        "Assistant: turn 3",
    ]
    assert isinstance(parts[5], InlineBinaryPart)
    assert parts[5].name == "photo.png"
    assert parts[6].text == "Please analyze this image: photo.png"
    assert parts[7].text == "Content of notes.txt:\nremember the milk"
    assert parts[-1] == TextPart("What now?", kind="message")
    assert len(parts) == 9


def test_history_limited_to_most_recent_twenty(settings, memory_store):
    user, chat = _seed_session(memory_store, 30)
    assembler = ContextAssembler(memory_store, settings)

    parts = assembler.assemble(chat.id, "next", owner_id=user.id)

    history = [p for p in parts if isinstance(p, TextPart) and p.kind == "history"]
    assert len(history) == 20
    assert history[0].text == "User: turn 10"
    assert history[-1].text == "Assistant: turn 29"


def test_history_from_foreign_owner_is_empty(settings, memory_store):
    _, chat = _seed_session(memory_store, 2)
    assembler = ContextAssembler(memory_store, settings)

    parts = assembler.assemble(chat.id, "hi", owner_id="someone-else")

    assert [p.kind for p in parts] == ["instruction", "message"]


def test_history_failure_treated_as_empty(settings):
    store = Mock()
    store.list_messages.side_effect = RuntimeError("connection reset")
    assembler = ContextAssembler(store, settings)

    parts = assembler.assemble("session-1", "hi", owner_id="user-1")

    assert [p.kind for p in parts] == ["instruction", "message"]


def test_client_history_used_without_session(settings, memory_store):
    assembler = ContextAssembler(memory_store, settings)
    turns = [SimpleNamespace(role="user", content=f"q{i}") for i in range(25)]
    turns.append(SimpleNamespace(role="system", content="ignored"))

    parts = assembler.assemble(None, "hi", client_history=turns)

    history = [p.text for p in parts if p.kind == "history"]
    assert len(history) == 20
    assert history[0] == "User: q5"


def test_custom_system_prompt_replaces_default(settings, memory_store):
    assembler = ContextAssembler(memory_store, settings)

    parts = assembler.assemble(None, "hi", system_prompt="Answer in French.")

    assert parts[0].text == "Answer in French."


def test_long_text_attachment_truncated_with_marker(settings, memory_store):
    assembler = ContextAssembler(memory_store, settings)
    body = "a" * 6000

    parts = assembler.assemble(None, "hi", [_attachment("big.txt", "text/plain", body.encode())])

    text = parts[1].text
    assert text.startswith("Content of big.txt:\n" + "a" * 5000)
    assert "a" * 5001 not in text
    assert "truncated" in text


def test_inline_media_task_texts(settings, memory_store):
    assembler = ContextAssembler(memory_store, settings)
    attachments = [
        _attachment("talk.mp3", "audio/mpeg", b"ID3"),
        _attachment("clip.mp4", "video/mp4", b"\x00\x00"),
        _attachment("paper.pdf", "application/pdf", b"%PDF"),
    ]

    parts = assembler.assemble(None, "hi", attachments)

    tasks = [p.text for p in parts if isinstance(p, TextPart) and p.kind == "attachment"]
    assert tasks == [
        "Please transcribe and analyze this audio file: talk.mp3",
        "Please analyze this video: clip.mp4",
        "Please summarize this PDF document: paper.pdf",
    ]
    assert sum(isinstance(p, InlineBinaryPart) for p in parts) == 3


def test_docx_text_extracted(settings, memory_store):
    assembler = ContextAssembler(memory_store, settings)

    parts = assembler.assemble(
        None, "hi", [_attachment("memo.docx", DOCX, _docx("First line", "Second line"))]
    )

    assert parts[1].text == "Content of memo.docx:\nFirst line\nSecond line"


def test_legacy_office_gets_placeholder(settings, memory_store):
    assembler = ContextAssembler(memory_store, settings)

    parts = assembler.assemble(
        None, "hi", [_attachment("old.doc", "application/msword", b"\xd0\xcf\x11\xe0")]
    )

    assert parts[1].text.startswith("[Attached file: old.doc (application/msword)")


def test_corrupt_ooxml_returns_none():
    assert extract_ooxml_text(DOCX, b"not a zip") is None


def _xlsx(sheets) -> bytes:
    workbook = Workbook()
    workbook.remove(workbook.active)
    for title, rows in sheets:
        sheet = workbook.create_sheet(title)
        for row in rows:
            sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def _pptx(*slides: str) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("[Content_Types].xml", "<Types/>")
        # Written out of order; slide10 must still follow slide2
        for number in sorted(range(1, len(slides) + 1), key=str):
            archive.writestr(
                f"ppt/slides/slide{number}.xml",
                '<p:sld xmlns:p="urn:p" xmlns:a="urn:a"><p:cSld><p:spTree>'
                f"<a:p><a:r><a:t>{slides[number - 1]}</a:t></a:r></a:p>"
                "</p:spTree></p:cSld></p:sld>",
            )
    return buffer.getvalue()


def test_spreadsheet_cells_read_through_shared_strings(settings, memory_store):
    data = _xlsx(
        [
            ("Scores", [["Name", "Score"], ["Alice", 42], [None, None], ["Bob", 7]]),
            ("Notes", [["checked by", "Carol"]]),
        ]
    )
    assembler = ContextAssembler(memory_store, settings)

    parts = assembler.assemble(None, "hi", [_attachment("scores.xlsx", XLSX, data)])

    assert parts[1].text == (
        "Content of scores.xlsx:\n"
        "[Scores]\nName\tScore\nAlice\t42\nBob\t7\n\n"
        "[Notes]\nchecked by\tCarol"
    )


def test_empty_spreadsheet_gets_placeholder(settings, memory_store):
    assembler = ContextAssembler(memory_store, settings)

    parts = assembler.assemble(
        None, "hi", [_attachment("blank.xlsx", XLSX, _xlsx([("Sheet", [])]))]
    )

    assert parts[1].text.startswith("[Attached file: blank.xlsx")


def test_corrupt_spreadsheet_returns_none():
    assert extract_ooxml_text(XLSX, b"not a zip") is None


def test_slides_extracted_in_numeric_order():
    slides = [f"slide {n}" for n in range(1, 11)]

    text = extract_ooxml_text(PPTX, _pptx(*slides))

    assert text.splitlines() == slides
