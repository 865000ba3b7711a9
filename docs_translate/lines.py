"""Line-level markdown classification shared by the chunker, validator and repairs.

Every structural decision in the pipeline is made per line, so the rules that
say what a fence, a blank line, a list item or a comment-only line is live
here and nowhere else.
"""

import re
from enum import Enum

FENCE_MARKER = "```"

PLACEHOLDER_RE = re.compile(r"^CODE_BLOCK_(\d+)$")
PLACEHOLDER_ANYWHERE_RE = re.compile(r"CODE_BLOCK_\d+")
FENCE_LINE_RE = re.compile(r"^(\s*)(```)(.*)$")
LIST_ITEM_RE = re.compile(r"^[\t ]*(?:[-*]\s+|\d+[.)]\s+)")
LIST_PREFIX_RE = re.compile(r"^([\t ]*(?:[-*]|\d+[.)])\s+)")
COMMENT_ONLY_RE = re.compile(r"^<!--.*-->$")
LEADING_WS_RE = re.compile(r"^[\t ]+")
# [text](url) but not ![alt](src)
LINK_RE = re.compile(r"(?<!!)\[[^\]]+\]\(([^)]+)\)")


class LineKind(str, Enum):
    BLANK = "blank"
    FENCE = "fence"
    COMMENT_ONLY = "comment-only"
    LIST_ITEM = "list-item"
    YAML_DELIMITER = "yaml-delimiter"
    YAML_FRONT_MATTER = "yaml-front-matter"
    CONTENT = "content"


def split_lines(text: str) -> list[str]:
    """Split on any line ending style. An empty string is one empty line."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return text.split("\n")


def line_count(text: str) -> int:
    return len(split_lines(text))


def determine_line_ending(text: str) -> str:
    """Return the document's line ending; mixed documents fall back to LF."""
    has_crlf = "\r\n" in text
    has_lf_only = re.search(r"(?<!\r)\n", text) is not None
    if has_crlf and has_lf_only:
        return "\n"
    return "\r\n" if has_crlf else "\n"


def is_blank(line: str) -> bool:
    return line.strip() == ""


def is_fence(line: str) -> bool:
    return FENCE_MARKER in line


def is_comment_only(line: str) -> bool:
    trimmed = line.strip()
    if trimmed == "<!--":
        return True
    return COMMENT_ONLY_RE.match(trimmed) is not None


def is_inline_comment(line: str) -> bool:
    """A line that carries an HTML comment next to other text."""
    return "<!--" in line and not is_comment_only(line)


def is_list_item(line: str) -> bool:
    return LIST_ITEM_RE.match(line) is not None


def is_yaml_delimiter(line: str) -> bool:
    return line.strip() == "---"


def is_placeholder(line: str) -> bool:
    return PLACEHOLDER_RE.match(line.strip()) is not None


def list_prefix(line: str) -> str | None:
    match = LIST_PREFIX_RE.match(line)
    return match.group(1) if match else None


def leading_whitespace(line: str) -> str:
    match = LEADING_WS_RE.match(line)
    return match.group(0) if match else ""


def count_trailing_blank(lines: list[str]) -> int:
    count = 0
    for line in reversed(lines):
        if not is_blank(line):
            break
        count += 1
    return count


def link_destinations(text: str) -> list[str]:
    """Markdown link URLs in order of appearance, images excluded."""
    return LINK_RE.findall(text)


def yaml_front_matter_range(lines: list[str]) -> tuple[int, int] | None:
    """Inclusive (start, end) of a leading ``---`` block.

    An unterminated block runs to the end of the document.
    """
    if len(lines) < 2 or not is_yaml_delimiter(lines[0]):
        return None
    for i in range(1, len(lines)):
        if is_yaml_delimiter(lines[i]):
            return 0, i
    return 0, len(lines) - 1


def has_body_content(lines: list[str], yaml_range: tuple[int, int]) -> bool:
    start, end = yaml_range
    return any(
        not is_blank(line)
        for i, line in enumerate(lines)
        if i < start or i > end
    )


def classify_line(
    line: str,
    index: int,
    yaml_range: tuple[int, int] | None = None,
) -> LineKind:
    if is_fence(line):
        return LineKind.FENCE
    if is_comment_only(line):
        return LineKind.COMMENT_ONLY
    if is_yaml_delimiter(line):
        return LineKind.YAML_DELIMITER
    if yaml_range is not None and yaml_range[0] <= index <= yaml_range[1]:
        return LineKind.YAML_FRONT_MATTER
    if is_blank(line):
        return LineKind.BLANK
    if is_list_item(line):
        return LineKind.LIST_ITEM
    return LineKind.CONTENT


def classify_lines(
    lines: list[str],
    yaml_range: tuple[int, int] | None = None,
    detect_front_matter: bool = True,
) -> list[LineKind]:
    """Tag every line once.

    ``yaml_range`` lets callers classify one text against another text's
    front matter, which the structural resync needs.
    """
    if yaml_range is None and detect_front_matter:
        yaml_range = yaml_front_matter_range(lines)
    return [classify_line(line, i, yaml_range) for i, line in enumerate(lines)]
