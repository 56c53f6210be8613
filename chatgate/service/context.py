from __future__ import annotations

import io
import re
import zipfile
import zlib
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Sequence, Union
from xml.etree import ElementTree as ET

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from chatgate.config import (
    DEFAULT_SYSTEM_PROMPT,
    INLINE_MIME_TYPES,
    OFFICE_MIME_TYPES,
    TEXT_MIME_TYPES,
    Settings,
)
from chatgate.logging import get_logger
from chatgate.service.attachments import ProcessedAttachment
from chatgate.storage.models import Message

logger = get_logger(__name__)

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
# Paragraph-bearing package members for word-processing and presentation files
_OOXML_MEMBERS = {
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": re.compile(
        r"^word/(document|footnotes|endnotes)\.xml$"
    ),
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": re.compile(
        r"^ppt/slides/slide(\d+)\.xml$"
    ),
}
_MEMBER_NUMBER_RE = re.compile(r"(\d+)\.xml$")


@dataclass(frozen=True)
class TextPart:
    text: str
    kind: str = "text"


@dataclass(frozen=True)
class InlineBinaryPart:
    mime_type: str
    data: bytes
    name: str


ContentPart = Union[TextPart, InlineBinaryPart]


class HistoryStore(Protocol):
    def list_messages(
        self, session_id: str, limit: Optional[int] = None, *, owner_id: Optional[str] = None
    ) -> List[Message]: ...


def _task_for(mime_type: str, name: str) -> str:
    if mime_type.startswith("image/"):
        return f"Please analyze this image: {name}"
    if mime_type.startswith("audio/"):
        return f"Please transcribe and analyze this audio file: {name}"
    if mime_type.startswith("video/"):
        return f"Please analyze this video: {name}"
    return f"Please summarize this PDF document: {name}"


def _paragraph_text(xml_bytes: bytes) -> List[str]:
    """Join the ``<*:t>`` runs of every ``<*:p>`` paragraph, one line each."""

    root = ET.fromstring(xml_bytes)
    lines: List[str] = []
    for paragraph in root.iter():
        if not str(paragraph.tag).endswith("}p"):
            continue
        runs = [
            node.text
            for node in paragraph.iter()
            if str(node.tag).endswith("}t") and node.text
        ]
        line = "".join(runs).strip()
        if line:
            lines.append(line)
    return lines


def _member_order(name: str) -> tuple:
    match = _MEMBER_NUMBER_RE.search(name)
    return (int(match.group(1)) if match else 0, name)


def _spreadsheet_text(data: bytes) -> str:
    """One tab-separated line per non-empty row, each sheet headed by its title."""

    workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    try:
        blocks: List[str] = []
        for sheet in workbook.worksheets:
            rows = []
            for row in sheet.iter_rows(values_only=True):
                cells = ["" if value is None else str(value) for value in row]
                if any(cells):
                    rows.append("\t".join(cells).rstrip("\t"))
            if rows:
                blocks.append("\n".join([f"[{sheet.title}]", *rows]))
    finally:
        workbook.close()
    return "\n\n".join(blocks)


def extract_ooxml_text(mime_type: str, data: bytes) -> Optional[str]:
    """Pull the visible text out of a docx/xlsx/pptx package, or ``None``."""

    try:
        if mime_type == XLSX_MIME:
            text = _spreadsheet_text(data)
        else:
            pattern = _OOXML_MEMBERS.get(mime_type)
            if not pattern:
                return None
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                names = sorted(
                    (name for name in archive.namelist() if pattern.match(name)),
                    key=_member_order,
                )
                lines: List[str] = []
                for name in names:
                    lines.extend(_paragraph_text(archive.read(name)))
            text = "\n".join(lines)
    except (
        zipfile.BadZipFile,
        InvalidFileException,
        ET.ParseError,
        KeyError,
        OSError,
        ValueError,
        zlib.error,
    ) as exc:
        logger.info("attachment_ooxml_unreadable", mime_type=mime_type, error=str(exc))
        return None
    return text or None


class ContextAssembler:
    """Builds the ordered content parts sent to the completion backend.

    Order: one instruction part, prior turns oldest-first, attachment parts in
    input order, then the current message.
    """

    def __init__(self, store: HistoryStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def assemble(
        self,
        session_id: Optional[str],
        current_message: str,
        attachments: Sequence[ProcessedAttachment] = (),
        *,
        owner_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
        client_history: Optional[Iterable] = None,
    ) -> List[ContentPart]:
        instruction = system_prompt or self.settings.system_prompt or DEFAULT_SYSTEM_PROMPT
        parts: List[ContentPart] = [TextPart(instruction, kind="instruction")]

        history: List[TextPart] = []
        if session_id:
            history = self._session_history(session_id, owner_id)
        elif client_history:
            history = self._client_history(client_history)
        parts.extend(history)

        for attachment in attachments:
            parts.extend(self._attachment_parts(attachment))

        parts.append(TextPart(current_message, kind="message"))
        return parts

    def _render_turn(self, role: str, content: str) -> TextPart:
        speaker = "User" if role == "user" else "Assistant"
        return TextPart(f"{speaker}: {content}", kind="history")

    def _session_history(self, session_id: str, owner_id: Optional[str]) -> List[TextPart]:
        try:
            messages = self.store.list_messages(
                session_id, self.settings.history_limit, owner_id=owner_id
            )
        except Exception as exc:
            logger.warning(
                "context_history_unavailable", session_id=session_id, error=str(exc)
            )
            return []
        return [
            self._render_turn(msg.role, msg.content)
            for msg in messages
            if msg.role in {"user", "assistant"}
        ]

    def _client_history(self, client_history: Iterable) -> List[TextPart]:
        turns = [
            turn
            for turn in client_history
            if getattr(turn, "role", None) in {"user", "assistant"}
            and getattr(turn, "content", None)
        ]
        limit = self.settings.history_limit
        recent = turns[-limit:] if limit > 0 else []
        return [self._render_turn(turn.role, turn.content) for turn in recent]

    def _attachment_parts(self, attachment: ProcessedAttachment) -> List[ContentPart]:
        mime_type = attachment.mime_type
        if mime_type in INLINE_MIME_TYPES:
            return [
                InlineBinaryPart(mime_type, attachment.inline_data, attachment.name),
                TextPart(_task_for(mime_type, attachment.name), kind="attachment"),
            ]
        text: Optional[str] = None
        if mime_type in TEXT_MIME_TYPES:
            text = attachment.inline_data.decode("utf-8", errors="replace")
        elif mime_type in OFFICE_MIME_TYPES:
            text = extract_ooxml_text(mime_type, attachment.inline_data)
        if not text:
            return [
                TextPart(
                    f"[Attached file: {attachment.name} ({mime_type}). "
                    "Its content could not be extracted.]",
                    kind="attachment",
                )
            ]
        return [
            TextPart(
                f"Content of {attachment.name}:\n{self._truncate(text)}", kind="attachment"
            )
        ]

    def _truncate(self, text: str) -> str:
        limit = self.settings.attachment_text_limit
        if len(text) <= limit:
            return text
        return f"{text[:limit]}\n[... truncated, showing first {limit} of {len(text)} characters]"
