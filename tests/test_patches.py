from docpilot.patches import APPEND_SENTINEL, apply_change_map, build_change_map, strip_markdown
from docpilot.schemas import ChangeEntry


def test_strip_markdown_flattens_inline_and_block_syntax():
    raw = (
        "# Title\n\n"
        "Some **bold**, *italic*, ~~gone~~ and `code`.\n"
        "> quoted line\n"
        "---\n"
        "- first item\n"
        "2. second item\n"
        "See [the docs](https://example.com) and ![a chart](chart.png)."
    )
    cleaned = strip_markdown(raw)
    assert "**" not in cleaned
    assert "~~" not in cleaned
    assert "`" not in cleaned
    assert "](" not in cleaned
    assert not any(line.startswith(("#", ">", "- ", "2. ")) for line in cleaned.splitlines())
    assert "Title" in cleaned
    assert "Some bold, italic, gone and code." in cleaned
    assert "quoted line" in cleaned
    assert "first item" in cleaned
    assert "See the docs and a chart." in cleaned


def test_strip_markdown_unwraps_code_fences_and_collapses_blank_lines():
    raw = "```python\nprint('hi')\n```\n\n\n\nafter"
    assert strip_markdown(raw) == "python\nprint('hi')\n\nafter"


def test_strip_markdown_keeps_underscores_inside_words():
    assert strip_markdown("snake_case_name stays") == "snake_case_name stays"
    assert strip_markdown("an _emphasised_ word") == "an emphasised word"


def test_strip_markdown_is_idempotent():
    samples = [
        "***very*** important",
        "- - nested marker",
        "1. 2. double numbered",
        "## **Heading** with [link](u)",
        "plain text already",
        "",
    ]
    for sample in samples:
        once = strip_markdown(sample)
        assert strip_markdown(once) == once


def test_build_change_map_keeps_sentinel_key_and_strips_replacement():
    changes, duplicates = build_change_map(
        [ChangeEntry(original=APPEND_SENTINEL, replacement="**Soft rain** taps\n- on the roof")]
    )
    assert list(changes) == [APPEND_SENTINEL]
    assert changes[APPEND_SENTINEL] == "Soft rain taps\non the roof"
    assert duplicates == []


def test_build_change_map_last_duplicate_wins_and_is_reported():
    entries = [
        ChangeEntry(original="alpha", replacement="one"),
        ChangeEntry(original="beta", replacement="two"),
        ChangeEntry(original="alpha", replacement="three"),
        ChangeEntry(original="alpha", replacement="four"),
    ]
    changes, duplicates = build_change_map(entries)
    assert changes == {"alpha": "four", "beta": "two"}
    assert duplicates == ["alpha"]


def test_apply_change_map_replaces_appends_deletes_and_reports_missing():
    text = "Hello world. Goodbye world."
    changes = {
        "world": "there",
        " Goodbye there.": "",
        "absent anchor": "x",
        APPEND_SENTINEL: " The end.",
    }
    updated, missing = apply_change_map(text, changes)
    assert updated == "Hello there. Goodbye world. The end."
    assert missing == [" Goodbye there.", "absent anchor"]


def test_apply_change_map_populates_empty_document():
    updated, missing = apply_change_map("", {APPEND_SENTINEL: "Rain on tin roofs"})
    assert updated == "Rain on tin roofs"
    assert missing == []


def test_apply_change_map_is_case_sensitive():
    updated, missing = apply_change_map("Fox and fox", {"FOX": "cat"})
    assert updated == "Fox and fox"
    assert missing == ["FOX"]
