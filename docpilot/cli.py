import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import httpx

from .patches import apply_change_map


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def iter_sse(lines: Iterable[str]) -> Iterator[Tuple[str, Dict[str, Any]]]:
    """Group ``event:``/``data:`` lines into ``(event, payload)`` pairs."""
    event_type = "message"
    data_lines: List[str] = []
    for line in lines:
        if not line:
            if data_lines:
                yield event_type, json.loads("\n".join(data_lines))
            event_type, data_lines = "message", []
            continue
        if line.startswith("event:"):
            if data_lines:
                yield event_type, json.loads("\n".join(data_lines))
                data_lines = []
            event_type = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:"):].strip())
    if data_lines:
        yield event_type, json.loads("\n".join(data_lines))


def _print_changes(changes: Dict[str, str]) -> None:
    if not changes:
        print("No changes proposed.")
        return
    print(f"\n{len(changes)} change(s):")
    for original, replacement in changes.items():
        print(f"- {original!r} -> {replacement!r}")


def run_chat(args: argparse.Namespace, client: Optional[httpx.Client] = None) -> int:
    base = args.base_url or DEFAULT_API_BASE
    path = Path(args.file)
    current_text = path.read_text(encoding="utf-8") if path.exists() else ""
    payload = {
        "currentText": current_text,
        "instructions": args.instructions,
        "documentId": args.document,
        "userId": args.user,
        "model": args.model,
        "actionMode": "ask" if args.ask else "edit",
        "webSearchEnabled": args.web_search,
    }
    changes: Optional[Dict[str, str]] = None
    owns_client = client is None
    client = client or httpx.Client(timeout=None)
    try:
        with client.stream("POST", _join_url(base, "/api/chat"), json=payload) as resp:
            if resp.status_code >= 400:
                resp.read()
                print(f"Request rejected: HTTP {resp.status_code} {resp.text}")
                return 1
            for event, data in iter_sse(resp.iter_lines()):
                if event == "assistant-delta":
                    print(data.get("delta", ""), end="", flush=True)
                elif event == "assistant-complete":
                    print()
                elif event == "status" and "isSearching" in data:
                    print(f"[{data.get('message')}]")
                elif event == "changes-final":
                    changes = data.get("changes") or {}
                    _print_changes(changes)
                    for anchor in data.get("duplicates") or []:
                        print(f"warning: several edits targeted {anchor!r}; only the last was kept")
                elif event == "result" and data.get("remainingUses") is not None:
                    print(f"Premium uses remaining: {data['remainingUses']}")
                elif event == "error":
                    print(f"Error: {data.get('message') or data.get('error')}")
                    return 1
    finally:
        if owns_client:
            client.close()
    if args.apply and changes:
        updated, missing = apply_change_map(current_text, changes)
        path.write_text(updated, encoding="utf-8")
        print(f"Applied {len(changes) - len(missing)} change(s) to {path}.")
        for anchor in missing:
            print(f"Not found in document: {anchor!r}")
    return 0


def run_usage(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, f"/api/users/{args.user_id}/usage"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch usage: HTTP {resp.status_code}")
            return 1
        data = resp.json()
    resets = f", resets {data['resetsAt']}" if data.get("resetsAt") else ""
    print(f"{data['tier']}: {data['used']}/{data['limit']} premium uses{resets}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Docpilot CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    chat = subparsers.add_parser("chat", help="Ask about or edit a document")
    chat.add_argument("--document", required=True, help="Document id")
    chat.add_argument("--file", required=True, help="Local file holding the document text")
    chat.add_argument("--instructions", required=True, help="What to ask or change")
    chat.add_argument("--user", default=None, help="User id for premium tiers and search")
    chat.add_argument("--model", default="basic", help="Model tier")
    chat.add_argument("--ask", action="store_true", help="Answer only; propose no edits")
    chat.add_argument("--web-search", action="store_true", help="Let the model search the web")
    chat.add_argument("--apply", action="store_true", help="Write the proposed changes back to --file")

    usage = subparsers.add_parser("usage", help="Show premium usage for a user")
    usage.add_argument("user_id")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "chat":
        return run_chat(args)
    if args.command == "usage":
        return run_usage(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
