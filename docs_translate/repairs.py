"""Deterministic fixes applied to model output before validation.

Models routinely drop a trailing blank line, translate an HTML comment,
renumber a list or "fix" a URL. Each function here undoes one such drift by
copying the relevant part back from the source, position by position. All of
them are pure: ``(source, translated) -> repaired``.
"""

import re

from docs_translate.lines import (
    PLACEHOLDER_ANYWHERE_RE,
    LineKind,
    classify_line,
    count_trailing_blank,
    determine_line_ending,
    is_comment_only,
    is_inline_comment,
    is_placeholder,
    leading_whitespace,
    link_destinations,
    list_prefix,
    split_lines,
    yaml_front_matter_range,
)

_EMPTY_HEADING_RE = re.compile(r"^#{1,6}\s*$")
_HEADING_RE = re.compile(r"^#{1,6}\s+")
# (opening "[text](", destination, closing ")")
_LINK_PARTS_RE = re.compile(r"((?<!!)\[([^\]]+)\]\()([^)]+)(\))")
_BROKEN_SCHEME_RE = re.compile(r'^(https?):\s*"//', re.IGNORECASE)

# Lines that resync copies from the source instead of the translation.
_STRUCTURAL_KINDS = (
    LineKind.FENCE,
    LineKind.COMMENT_ONLY,
    LineKind.YAML_DELIMITER,
    LineKind.YAML_FRONT_MATTER,
    LineKind.BLANK,
)


def normalize_heading_lines(text: str) -> str:
    """Join a bare ``##`` line with the text the model moved to the next line."""
    lines = split_lines(text)
    out = []
    i = 0
    while i < len(lines):
        line = lines[i]
        if _EMPTY_HEADING_RE.match(line):
            next_index = i + 1
            while next_index < len(lines) and lines[next_index].strip() == "":
                next_index += 1
            if next_index < len(lines) and not _HEADING_RE.match(lines[next_index]):
                out.append(line.rstrip() + " " + lines[next_index].lstrip())
                i = next_index + 1
                continue
        out.append(line)
        i += 1
    return determine_line_ending(text).join(out)


def ensure_trailing_empty_lines(source: str, translated: str) -> str:
    missing = count_trailing_blank(split_lines(source)) - count_trailing_blank(split_lines(translated))
    if missing <= 0:
        return translated
    return translated + determine_line_ending(translated) * missing


def restore_comment_lines(source: str, translated: str) -> str:
    """Put comment-only lines back verbatim; needs equal line counts."""
    source_lines = split_lines(source)
    out = split_lines(translated)
    if len(source_lines) != len(out):
        return translated
    for i, line in enumerate(source_lines):
        if is_comment_only(line):
            out[i] = line
    return determine_line_ending(translated).join(out)


def sync_to_source_structure(source: str, translated: str) -> str:
    """Rebuild the translation on the source's line skeleton.

    Structural lines (fences, comment-only lines, front matter, blanks) are
    taken from the source; every other source line consumes the next content
    line of the translation, in order, falling back to the source line when
    the translation runs out. Lines carrying an inline comment form their own
    stream. The result always has the source's line count, but when the two
    texts disagree a lot a translated sentence can land on a neighbouring
    line.
    """
    source_lines = split_lines(source)
    translated_lines = split_lines(translated)
    yaml_range = yaml_front_matter_range(source_lines)

    content_lines: list[str] = []
    comment_lines: list[str] = []
    for index, line in enumerate(translated_lines):
        kind = classify_line(line, index, yaml_range)
        if kind in (LineKind.FENCE, LineKind.COMMENT_ONLY):
            continue
        if is_inline_comment(line):
            comment_lines.append(line)
            continue
        if kind in _STRUCTURAL_KINDS:
            continue
        content_lines.append(line)

    out = []
    content_iter = iter(content_lines)
    comment_iter = iter(comment_lines)
    for index, line in enumerate(source_lines):
        kind = classify_line(line, index, yaml_range)
        if kind in (LineKind.FENCE, LineKind.COMMENT_ONLY):
            out.append(line)
        elif is_inline_comment(line):
            out.append(next(comment_iter, line))
        elif kind in _STRUCTURAL_KINDS:
            out.append(line)
        else:
            out.append(next(content_iter, line))

    return determine_line_ending(source).join(out)


def restore_list_markers(source: str, translated: str) -> str:
    """Copy list prefixes (indent + marker) from the source, line by line.

    A list marker the model invented on a non-list line is removed, keeping
    the source line's indentation.
    """
    source_lines = split_lines(source)
    target_lines = split_lines(translated)
    if len(source_lines) != len(target_lines):
        return translated

    out = list(target_lines)
    for i, (source_line, target_line) in enumerate(zip(source_lines, target_lines)):
        source_prefix = list_prefix(source_line)
        target_prefix = list_prefix(target_line)
        if source_prefix is not None:
            content = target_line[len(target_prefix):] if target_prefix is not None else target_line
            out[i] = source_prefix + content.lstrip()
        elif target_prefix is not None:
            out[i] = leading_whitespace(source_line) + target_line[len(target_prefix):].lstrip()
    return determine_line_ending(translated).join(out)


def restore_link_urls(source: str, translated: str) -> str:
    """Give the n-th link on each line the n-th URL of the source line."""
    source_lines = split_lines(source)
    out = split_lines(translated)
    if len(source_lines) != len(out):
        return translated

    for i, source_line in enumerate(source_lines):
        urls = link_destinations(source_line)
        if not urls:
            continue
        remaining = iter(urls)
        out[i] = _LINK_PARTS_RE.sub(
            lambda m: m.group(1) + next(remaining, m.group(3)) + m.group(4),
            out[i],
        )
    return determine_line_ending(translated).join(out)


def normalize_code_block_placeholders(source: str, translated: str) -> str:
    """Reset any line that mangles a source placeholder to the exact placeholder."""
    source_lines = split_lines(source)
    out = split_lines(translated)
    for i, source_line in enumerate(source_lines):
        if i >= len(out) or not is_placeholder(source_line):
            continue
        if PLACEHOLDER_ANYWHERE_RE.search(out[i]):
            out[i] = source_line.strip()
    return determine_line_ending(translated).join(out)


def normalize_markdown_link_urls(content: str) -> str:
    """Strip quoting and stray ``"`` artifacts models put into link destinations."""

    def fix(match: re.Match) -> str:
        url = match.group(3).strip()
        if len(url) >= 2 and url[0] == url[-1] and url[0] in ("'", '"'):
            url = url[1:-1]
        url = _BROKEN_SCHEME_RE.sub(lambda m: m.group(1) + "://", url)
        return match.group(1) + url + match.group(4)

    return _LINK_PARTS_RE.sub(fix, content)


def normalize_links_with_source(source: str, translated: str) -> str:
    """Document-wide: when link counts agree, reuse the source URLs in order."""
    source_links = link_destinations(source)
    if not source_links or len(source_links) != len(link_destinations(translated)):
        return translated
    remaining = iter(source_links)
    return _LINK_PARTS_RE.sub(
        lambda m: m.group(1) + next(remaining, m.group(3)) + m.group(4),
        translated,
    )


def is_valid_utf8(text: str) -> bool:
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def ensure_utf8(text: str) -> str:
    """Drop code points that cannot be encoded (lone surrogates)."""
    return text.encode("utf-8", "ignore").decode("utf-8")


def repair_chunk(source: str, translated: str, values_only: bool = False) -> str:
    """Run the per-chunk repair sequence in its fixed order."""
    if not values_only:
        translated = normalize_heading_lines(translated)
        translated = ensure_trailing_empty_lines(source, translated)
        translated = restore_comment_lines(source, translated)
        if len(split_lines(translated)) != len(split_lines(source)):
            translated = sync_to_source_structure(source, translated)
        translated = restore_list_markers(source, translated)
    translated = restore_link_urls(source, translated)
    return normalize_code_block_placeholders(source, translated)

