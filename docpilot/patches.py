import logging
import re
from typing import Dict, Iterable, List, Tuple

from .schemas import ChangeEntry


logger = logging.getLogger("uvicorn.error")

APPEND_SENTINEL = "!ADD_TO_END!"

# Applied in order; later patterns assume the earlier ones already ran.
_MARKDOWN_RULES = [
    (re.compile(r"`([^`]+)`"), r"\1"),
    (re.compile(r"!\[([^\]]*)\]\([^)]+\)"), r"\1"),
    (re.compile(r"\[([^\]]+)\]\([^)]+\)"), r"\1"),
    (re.compile(r"\[([^\]]+)\]\[[^\]]+\]"), r"\1"),
    (re.compile(r"~~([^~]+?)~~"), r"\1"),
    (re.compile(r"\*\*(.+?)\*\*"), r"\1"),
    (re.compile(r"__(.+?)__"), r"\1"),
    (re.compile(r"\*([^*]+)\*"), r"\1"),
    (re.compile(r"(^|\s)_([^_]+)_(\s|$)"), r"\1\2\3"),
    (re.compile(r"(^|\s)_([^_]+)_"), r"\1\2"),
    (re.compile(r"^#{1,6}\s+(.+)$", re.MULTILINE), r"\1"),
    (re.compile(r"^>\s+(.+)$", re.MULTILINE), r"\1"),
    (re.compile(r"^[-*_]{3,}$", re.MULTILINE), ""),
    (re.compile(r"^[\s]*[-*+]\s+(.+)$", re.MULTILINE), r"\1"),
    (re.compile(r"^[\s]*\d+\.\s+(.+)$", re.MULTILINE), r"\1"),
    (re.compile(r"\n{3,}"), "\n\n"),
]
_CODE_FENCE = re.compile(r"```[\s\S]*?```")


def _strip_once(text: str) -> str:
    cleaned = _CODE_FENCE.sub(lambda m: m.group(0).replace("```", "").strip(), text)
    for pattern, repl in _MARKDOWN_RULES:
        cleaned = pattern.sub(repl, cleaned)
    return cleaned.strip()


def strip_markdown(text: str) -> str:
    """Flatten markdown syntax to plain text.

    Every rule only removes characters, so repeating the pass until nothing
    changes terminates and makes the result a fixed point.
    """
    if not text or not isinstance(text, str):
        return text
    cleaned = _strip_once(text)
    while True:
        again = _strip_once(cleaned)
        if again == cleaned:
            return cleaned
        cleaned = again


def build_change_map(entries: Iterable[ChangeEntry], run_id: str = "-") -> Tuple[Dict[str, str], List[str]]:
    """Collapse generated edits into ``original -> replacement``.

    Returns the map and the anchors that were generated more than once; for
    those the last replacement is kept.
    """
    changes: Dict[str, str] = {}
    duplicates: List[str] = []
    for entry in entries:
        if entry.original in changes and entry.original not in duplicates:
            duplicates.append(entry.original)
        changes[entry.original] = strip_markdown(entry.replacement)
    if duplicates:
        logger.warning("Run %s change map had %d duplicate anchor(s); last replacement kept", run_id, len(duplicates))
    return changes, duplicates


def apply_change_map(text: str, changes: Dict[str, str]) -> Tuple[str, List[str]]:
    """Apply a change map to ``text`` and return ``(updated, missing_anchors)``.

    Anchors are matched exactly; only the first occurrence is replaced.
    """
    updated = text
    missing: List[str] = []
    for original, replacement in changes.items():
        if original == APPEND_SENTINEL:
            updated += replacement
        elif original and original in updated:
            updated = updated.replace(original, replacement, 1)
        else:
            missing.append(original)
    return updated, missing
