"""Tests for attachment validation and normalization."""

import base64

import httpx
import pytest

from chatgate.config import MAX_ATTACHMENT_BYTES
from chatgate.service.attachments import AttachmentProcessor, RawAttachment
from chatgate.service.errors import AttachmentError


def _inline(name="notes.txt", mime_type="text/plain", data=b"hello", size=None):
    return RawAttachment(
        name=name,
        mime_type=mime_type,
        size=len(data) if size is None else size,
        base64=base64.b64encode(data).decode(),
    )


async def test_inline_attachment_is_decoded(settings):
    processor = AttachmentProcessor(settings)

    [item] = await processor.process([_inline(data=b"plain text body")])

    assert item.name == "notes.txt"
    assert item.mime_type == "text/plain"
    assert item.inline_data == b"plain text body"
    assert item.size_bytes == len(b"plain text body")
    assert item.id


async def test_data_url_prefix_is_accepted(settings):
    processor = AttachmentProcessor(settings)
    payload = "data:image/png;base64," + base64.b64encode(b"\x89PNG").decode()

    [item] = await processor.process(
        [RawAttachment(name="a.png", mime_type="image/png", size=4, base64=payload)]
    )

    assert item.inline_data == b"\x89PNG"


async def test_declared_size_over_limit_rejected(settings):
    processor = AttachmentProcessor(settings)
    oversized = _inline(name="big.pdf", mime_type="application/pdf", size=11_000_000)

    with pytest.raises(AttachmentError) as excinfo:
        await processor.process([oversized])

    assert excinfo.value.file_name == "big.pdf"
    assert excinfo.value.detail["fileName"] == "big.pdf"
    assert excinfo.value.detail["maxSize"] == MAX_ATTACHMENT_BYTES


async def test_decoded_size_over_limit_rejected(settings):
    processor = AttachmentProcessor(settings, max_bytes=8)
    # Declares a small size but carries more bytes than allowed
    sneaky = _inline(data=b"0123456789abcdef", size=4)

    with pytest.raises(AttachmentError):
        await processor.process([sneaky])


async def test_disallowed_mime_type_rejected(settings):
    processor = AttachmentProcessor(settings)

    with pytest.raises(AttachmentError) as excinfo:
        await processor.process([_inline(name="run.exe", mime_type="application/x-msdownload")])

    assert excinfo.value.error_code == "attachment_error"
    assert excinfo.value.status_code == 400


@pytest.mark.parametrize(
    "raw",
    [
        RawAttachment(name="none.txt", mime_type="text/plain", size=1),
        RawAttachment(
            name="both.txt",
            mime_type="text/plain",
            size=1,
            base64="YQ==",
            url="https://example.com/a.txt",
        ),
    ],
)
async def test_exactly_one_payload_form_required(settings, raw):
    processor = AttachmentProcessor(settings)

    with pytest.raises(AttachmentError):
        await processor.process([raw])


async def test_invalid_base64_rejected(settings):
    processor = AttachmentProcessor(settings)
    broken = RawAttachment(name="x.txt", mime_type="text/plain", size=3, base64="***not base64***")

    with pytest.raises(AttachmentError):
        await processor.process([broken])


async def test_batch_is_all_or_nothing(settings):
    processor = AttachmentProcessor(settings)
    batch = [
        _inline(name="good.txt"),
        _inline(name="bad.bin", mime_type="application/octet-stream"),
        _inline(name="also-good.txt"),
    ]

    with pytest.raises(AttachmentError) as excinfo:
        await processor.process(batch)

    assert excinfo.value.file_name == "bad.bin"


async def test_remote_url_fetched_inline(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url == "https://files.example.com/report.csv"
        return httpx.Response(200, content=b"a,b\n1,2\n")

    processor = AttachmentProcessor(settings, transport=httpx.MockTransport(handler))

    [item] = await processor.process(
        [
            RawAttachment(
                name="report.csv",
                mime_type="text/csv",
                size=8,
                url="https://files.example.com/report.csv",
            )
        ]
    )

    assert item.inline_data == b"a,b\n1,2\n"
    assert item.size_bytes == 8


async def test_remote_fetch_over_cap_rejected(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"x" * 64)

    processor = AttachmentProcessor(
        settings, max_bytes=16, transport=httpx.MockTransport(handler)
    )

    with pytest.raises(AttachmentError):
        await processor.process(
            [RawAttachment(name="big.txt", mime_type="text/plain", size=1, url="http://h/big.txt")]
        )


async def test_remote_fetch_http_error_rejected(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    processor = AttachmentProcessor(settings, transport=httpx.MockTransport(handler))

    with pytest.raises(AttachmentError) as excinfo:
        await processor.process(
            [RawAttachment(name="gone.txt", mime_type="text/plain", size=1, url="http://h/gone")]
        )

    assert "could not be fetched" in excinfo.value.message


async def test_non_http_url_rejected(settings):
    processor = AttachmentProcessor(settings)

    with pytest.raises(AttachmentError):
        await processor.process(
            [RawAttachment(name="f.txt", mime_type="text/plain", size=1, url="file:///etc/passwd")]
        )
