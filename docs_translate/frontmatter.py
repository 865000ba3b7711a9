"""YAML front matter: translate values, never keys.

A document that is nothing but front matter is translated through a value
plan: every human-readable scalar is pulled out into a one-value-per-line
text, that text goes to the model, and each translated line is put back
into the slot it came from. Documents with a body get their front matter
translated with the prose and merged back key by key afterwards.
"""

import re
from dataclasses import dataclass, field

from docs_translate.lines import (
    determine_line_ending,
    has_body_content,
    is_yaml_delimiter,
    leading_whitespace,
    split_lines,
    yaml_front_matter_range,
)

KEY_VALUE_RE = re.compile(r"^(\s*)([^:#][^:]*):(\s*)(.*)$")
LIST_KEY_VALUE_RE = re.compile(r"^(\s*)-\s+([A-Za-z0-9_.-]+):\s*(.*)$")
LIST_VALUE_RE = re.compile(r"^(\s*)-\s+(.*)$")
TRAILING_COMMENT_RE = re.compile(r"^(.*?)(\s+#.*)$")
NUMERIC_RE = re.compile(r"^-?\d+(?:\.\d+)?$")

BLOCK_SCALAR_INDICATORS = ("|", ">")


@dataclass
class ValueSlot:
    """One translatable value: ``lines[line] == prefix + original + suffix``."""
    line: int
    prefix: str
    suffix: str
    original: str


@dataclass
class YamlValuePlan:
    text: str = ""
    slots: list[ValueSlot] = field(default_factory=list)


def is_numeric_value(value: str) -> bool:
    return NUMERIC_RE.match(value) is not None


def is_empty_string_value(value: str) -> bool:
    return value.strip().strip("\"'") == ""


def is_url_value(value: str) -> bool:
    trimmed = value.strip().strip("\"'")
    return trimmed.startswith("http://") or trimmed.startswith("https://")


def is_html_tag_value(value: str) -> bool:
    trimmed = value.strip().strip("\"'")
    return trimmed != "" and trimmed.startswith("<") and trimmed.endswith(">")


def split_quoted_value(value: str) -> tuple[str, str, str]:
    """Return (inner value, opening quote, closing quote)."""
    trimmed = value.strip()
    if len(trimmed) >= 2 and trimmed[0] == trimmed[-1] and trimmed[0] in ("'", '"'):
        return trimmed[1:-1], trimmed[0], trimmed[-1]
    return value, "", ""


def should_skip_key(key: str, skip_keys: list[str]) -> bool:
    lowered = key.lower()
    return any(lowered == skip.lower() for skip in skip_keys)


def _is_translatable(value: str) -> bool:
    return not (
        is_empty_string_value(value)
        or is_numeric_value(value.strip())
        or is_url_value(value)
        or is_html_tag_value(value)
    )


def _inline_slot(line: int, head: str, raw_value: str) -> ValueSlot | None:
    """Slot for ``head + raw_value`` where the value may be quoted or commented."""
    value, comment = raw_value, ""
    match = TRAILING_COMMENT_RE.match(value)
    if match:
        value, comment = match.group(1), match.group(2)
    value, quote_open, quote_close = split_quoted_value(value)
    if not _is_translatable(value):
        return None
    return ValueSlot(
        line=line,
        prefix=head + quote_open,
        suffix=quote_close + comment,
        original=value,
    )


def build_yaml_value_plan(source: str, skip_keys: list[str] | None = None) -> YamlValuePlan | None:
    """Plan for a front-matter-only document, or None when the document has a body."""
    skip_keys = skip_keys or []
    lines = split_lines(source)
    yaml_range = yaml_front_matter_range(lines)
    if yaml_range is None or has_body_content(lines, yaml_range):
        return None

    slots: list[ValueSlot] = []
    in_block = False
    block_indent = -1
    block_skip = False

    for i in range(yaml_range[0], yaml_range[1] + 1):
        line = lines[i]
        trimmed = line.strip()
        if is_yaml_delimiter(line):
            in_block = False
            continue
        indent = len(leading_whitespace(line))

        if in_block:
            if trimmed == "":
                continue
            if block_indent < 0:
                block_indent = indent
            if indent >= block_indent:
                if block_skip or is_numeric_value(trimmed):
                    continue
                value = line.lstrip()
                bullet = ""
                if value.startswith("- "):
                    bullet, value = "- ", value[2:]
                value, quote_open, quote_close = split_quoted_value(value)
                if is_empty_string_value(value) or is_url_value(value) or is_html_tag_value(value):
                    continue
                slots.append(ValueSlot(
                    line=i,
                    prefix=line[:indent] + bullet + quote_open,
                    suffix=quote_close,
                    original=value,
                ))
                continue
            in_block = False
            block_skip = False
            block_indent = -1

        if trimmed == "" or trimmed.startswith("#"):
            continue

        match = LIST_KEY_VALUE_RE.match(line)
        if match:
            indent_prefix, key, value = match.group(1), match.group(2).rstrip(), match.group(3)
            if value.strip() in BLOCK_SCALAR_INDICATORS:
                in_block, block_indent = True, -1
                block_skip = should_skip_key(key, skip_keys)
                continue
            if should_skip_key(key, skip_keys):
                continue
            slot = _inline_slot(i, f"{indent_prefix}- {key}: ", value)
            if slot is not None:
                slots.append(slot)
            continue

        match = LIST_VALUE_RE.match(line)
        if match:
            slot = _inline_slot(i, f"{match.group(1)}- ", match.group(2))
            if slot is not None:
                slots.append(slot)
            continue

        match = KEY_VALUE_RE.match(line)
        if match:
            indent_prefix, key, spacing, value = match.groups()
            key = key.rstrip()
            if value in BLOCK_SCALAR_INDICATORS:
                in_block, block_indent = True, -1
                block_skip = should_skip_key(key, skip_keys)
                continue
            if should_skip_key(key, skip_keys) or value == "":
                continue
            slot = _inline_slot(i, f"{indent_prefix}{key}:{spacing}", value)
            if slot is not None:
                slots.append(slot)

    return YamlValuePlan(text="\n".join(slot.original for slot in slots), slots=slots)


def apply_yaml_value_translations(source: str, plan: YamlValuePlan, translated_values: str) -> str:
    """Splice translated value lines into their slots; missing lines keep the original."""
    lines = split_lines(source)
    translated = split_lines(translated_values)
    for index, slot in enumerate(plan.slots):
        value = translated[index] if index < len(translated) else slot.original
        lines[slot.line] = slot.prefix + value + slot.suffix
    return determine_line_ending(source).join(lines)


def normalize_value_lines(source_values: str, translated_values: str) -> str:
    """Pad with empty lines or truncate to the source's line count."""
    count = len(split_lines(source_values))
    translated = split_lines(translated_values)
    if len(translated) == count:
        return translated_values
    if len(translated) > count:
        return "\n".join(translated[:count])
    return "\n".join(translated + [""] * (count - len(translated)))


def restore_missing_value_lines(source_values: str, translated_values: str) -> str:
    """Fill blank translated lines with their source value."""
    source = split_lines(source_values)
    translated = split_lines(translated_values)
    if len(source) != len(translated):
        return translated_values
    changed = False
    for i, (src, tgt) in enumerate(zip(source, translated)):
        if src.strip() != "" and tgt.strip() == "":
            translated[i] = src
            changed = True
    return "\n".join(translated) if changed else translated_values


def merge_translated_yaml_values(
    source: str,
    restored: str,
    synced: str,
    skip_keys: list[str] | None = None,
) -> str:
    """Bring translated front-matter values back after a structural resync.

    ``synced`` carries the source front matter verbatim; for every key not in
    ``skip_keys`` the value is taken from the same line of ``restored`` (the
    assembled translation) provided that line still holds the same key.
    Lines without a key are taken when their indentation is unchanged. The
    lines of a skip-listed ``|``/``>`` block scalar keep their source text.
    """
    skip_keys = skip_keys or []
    source_lines = split_lines(source)
    restored_lines = split_lines(restored)
    out = split_lines(synced)
    yaml_range = yaml_front_matter_range(source_lines)
    if yaml_range is None:
        return synced
    restored_range = yaml_front_matter_range(restored_lines)

    skipped_block_indent = -1
    for i in range(yaml_range[0], yaml_range[1] + 1):
        src = source_lines[i]
        if is_yaml_delimiter(src) or src.strip() == "":
            continue

        match = KEY_VALUE_RE.match(src)
        if skipped_block_indent >= 0:
            if match is None or len(match.group(1)) > skipped_block_indent:
                continue
            skipped_block_indent = -1

        in_restored = restored_range is not None and restored_range[0] <= i <= restored_range[1]
        if match is None:
            # block scalar text and plain list entries: same indentation required
            if in_restored and restored_lines[i].strip() != "" and (
                leading_whitespace(restored_lines[i]) == leading_whitespace(src)
            ):
                out[i] = restored_lines[i]
            continue
        indent, key, _spacing, value = match.groups()
        key = key.rstrip()
        if should_skip_key(key, skip_keys):
            if value.strip() in BLOCK_SCALAR_INDICATORS:
                skipped_block_indent = len(indent)
            continue
        if not in_restored:
            continue
        restored_match = KEY_VALUE_RE.match(restored_lines[i])
        if restored_match is None or restored_match.group(2).rstrip() != key:
            continue
        out[i] = indent + key + ":" + restored_match.group(3) + restored_match.group(4)

    return determine_line_ending(source).join(out)
