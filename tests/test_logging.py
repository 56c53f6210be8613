"""Tests for log redaction, error sanitizing and token estimates."""

from chatgate.logging import _redact_pii, sanitize_error_message
from chatgate.service.context import InlineBinaryPart, TextPart
from chatgate.service.tokenizer_utils import (
    PART_OVERHEAD_TOKENS,
    estimate_prompt_tokens,
    estimate_token_count,
)


def test_credential_fields_are_masked():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "guest_lookup",
            "session_token": "guest_abcdefghijklmnop",
            "x-guest-token": "guest_qrstuvwxyz012345",
            "cookie": "session_id=abc123",
            "email": "ada@example.com",
            "tokens_used": 42,
        },
    )

    assert event["session_token"] == "gu***op"
    assert event["x-guest-token"] == "gu***45"
    assert event["cookie"] == "se***23"
    assert event["email"] == "ad***om"
    assert event["tokens_used"] == 42
    assert event["event"] == "guest_lookup"


def test_tokens_inside_free_text_are_scrubbed():
    event = _redact_pii(
        None,
        "warning",
        {
            "event": "identity_lookup_failed",
            "error": "rejected Bearer eyJhbGciOi.abc.def for guest_1700000000000_Zx9-Yw8_Vu7T",
        },
    )

    assert "eyJhbGciOi" not in event["error"]
    assert "guest_1700000000000_Zx9-Yw8_Vu7T" not in event["error"]
    assert event["error"].count("[redacted]") == 2


def test_sanitized_errors_drop_tokens_and_paths():
    message = sanitize_error_message(
        "guest_1700000000123_AbCdEfGhIjKl failed reading /var/lib/chatgate/state.json"
    )

    assert "guest_1700000000123_AbCdEfGhIjKl" not in message
    assert "/var/lib" not in message


def test_token_estimate_counts_pieces_and_length():
    assert estimate_token_count("") == 0
    assert estimate_token_count("Hello, world!") == 4
    assert estimate_token_count("x" * 40) == 10


def test_prompt_estimate_frames_every_part():
    parts = [
        TextPart("Be brief.", kind="instruction"),
        InlineBinaryPart("image/png", b"\x89PNG" * 100, "cat.png"),
        TextPart("What is this?", kind="message"),
    ]

    expected = (
        3 * PART_OVERHEAD_TOKENS
        + estimate_token_count("Be brief.")
        + estimate_token_count("What is this?")
    )
    assert estimate_prompt_tokens(parts) == expected
