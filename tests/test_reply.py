import pytest

from feishubridge.agent.reply import (
    clean_reply_text,
    extract_json_object,
    extract_media_paths,
    normalize_reply,
    strip_tool_traces,
)
from feishubridge.errors import AgentMalformedOutput


def test_extract_json_object_skips_noise() -> None:
    raw = "\x1b[1mbooting\x1b[0m\n{\"text\": \"hi\"}\ntrailing log"
    assert extract_json_object(raw) == {"text": "hi"}


def test_extract_json_object_rejects_garbage() -> None:
    with pytest.raises(AgentMalformedOutput):
        extract_json_object("nothing to see")
    with pytest.raises(AgentMalformedOutput):
        extract_json_object("{broken")


@pytest.mark.parametrize(
    "data",
    [
        {"text": "hi"},
        {"reply": {"text": "hi"}},
        {"result": {"text": "hi"}},
        {"result": {"payload": {"text": "hi"}}},
        {"result": {"payloads": [{"text": "hi"}]}},
    ],
)
def test_reply_shapes(data: dict) -> None:
    assert normalize_reply(data).text == "hi"


def test_payload_media_aliases_and_lines() -> None:
    reply = normalize_reply(
        {
            "payloads": [
                {"text": "see attached\nFILE: outputs/a.pdf"},
                {"file_path": "b.png"},
                {"mediaUrl": "https://example.com/c.png"},
            ]
        }
    )
    assert reply.media_paths == ["b.png", "https://example.com/c.png", "outputs/a.pdf"]


def test_empty_reply_is_malformed() -> None:
    with pytest.raises(AgentMalformedOutput):
        normalize_reply({"result": {}})


def test_media_lines() -> None:
    text = "Done.\nMEDIA: /tmp/x.png\n  file:  outputs/report.pdf\nFILE:"
    assert extract_media_paths(text) == ["/tmp/x.png", "outputs/report.pdf"]


def test_tool_traces_are_removed() -> None:
    text = "\n".join(
        [
            "\U0001F6E0\uFE0F Exec: cat > /tmp/x.py <<'EOF'",
            "print('secret')",
            "EOF",
            "\U0001F4D6 Read: /home/me/notes.md",
            "Exec: ls -la",
            "Here is your answer.",
        ]
    )
    assert strip_tool_traces(text) == "Here is your answer."


def test_clean_reply_text() -> None:
    assert clean_reply_text("Report ready.\nFILE: outputs/r.pdf\nExec: rm tmp") == "Report ready."
