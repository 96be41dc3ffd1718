import json

import httpx
import respx
from httpx import Response

from docpilot.cli import build_parser, iter_sse, run_chat


API = "http://docpilot.test"


def sse(*events) -> str:
    return "".join(f"event: {name}\ndata: {json.dumps(data)}\n\n" for name, data in events)


def test_iter_sse_groups_frames():
    lines = [
        "event: status",
        'data: {"message": "Starting AI processing..."}',
        "",
        "event: assistant-delta",
        'data: {"delta": "Hi"}',
        "event: complete",
        'data: {"message": "Processing complete"}',
    ]
    assert list(iter_sse(lines)) == [
        ("status", {"message": "Starting AI processing..."}),
        ("assistant-delta", {"delta": "Hi"}),
        ("complete", {"message": "Processing complete"}),
    ]


def _args(tmp_path, *extra):
    doc = tmp_path / "draft.txt"
    doc.write_text("The quick brown fox.", encoding="utf-8")
    argv = ["--base-url", API, "chat", "--document", "doc-1", "--file", str(doc), "--instructions", "Punch it up"]
    return build_parser().parse_args(argv + list(extra)), doc


def test_chat_applies_changes_to_file(tmp_path, capsys):
    args, doc = _args(tmp_path, "--apply")
    body = sse(
        ("status", {"message": "Starting AI processing..."}),
        ("assistant-delta", {"delta": "Making it vivid."}),
        ("assistant-complete", {"text": "Making it vivid."}),
        ("changes-final", {"changes": {"quick brown": "swift red", "!ADD_TO_END!": " It ran.", "zebra": "x"}}),
        ("result", {"remainingUses": None}),
        ("complete", {"message": "Processing complete"}),
    )
    with respx.mock(assert_all_called=True) as respx_mock:
        route = respx_mock.post(f"{API}/api/chat").mock(
            return_value=Response(200, text=body, headers={"content-type": "text/event-stream"})
        )
        with httpx.Client() as client:
            assert run_chat(args, client=client) == 0
        sent = json.loads(route.calls[0].request.content)

    assert sent["currentText"] == "The quick brown fox."
    assert sent["actionMode"] == "edit"
    assert sent["documentId"] == "doc-1"
    assert doc.read_text(encoding="utf-8") == "The swift red fox. It ran."
    out = capsys.readouterr().out
    assert "Making it vivid." in out
    assert "Not found in document: 'zebra'" in out


def test_chat_reports_stream_error(tmp_path, capsys):
    args, doc = _args(tmp_path, "--ask", "--apply")
    body = sse(("error", {"error": "Failed to generate content", "message": "provider exploded"}))
    with respx.mock(assert_all_called=True) as respx_mock:
        route = respx_mock.post(f"{API}/api/chat").mock(return_value=Response(200, text=body))
        with httpx.Client() as client:
            assert run_chat(args, client=client) == 1
        sent = json.loads(route.calls[0].request.content)

    assert sent["actionMode"] == "ask"
    assert doc.read_text(encoding="utf-8") == "The quick brown fox."
    assert "Error: provider exploded" in capsys.readouterr().out


def test_chat_reports_rejected_request(tmp_path, capsys):
    args, _ = _args(tmp_path)
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.post(f"{API}/api/chat").mock(return_value=Response(422, json={"detail": "bad"}))
        with httpx.Client() as client:
            assert run_chat(args, client=client) == 1
    assert "HTTP 422" in capsys.readouterr().out
