"""Structural validation of a translation against its source.

``Validator.validate_detailed`` reports the first violation found, checking the
rules in a fixed order so that retries are reproducible:

1. line count
2. code-fence positions
3. empty-line positions
4. list-item positions
5. HTML-comment-only lines (positions and exact text)
6. link URLs (target URLs on a line must be a subset of the source's)
7. untranslated copy (token Jaccard and LCS ratios both over threshold)
"""

import difflib
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from markdown_it import MarkdownIt

from docs_translate.lines import (
    is_blank,
    is_comment_only,
    is_fence,
    is_list_item,
    is_placeholder,
    is_yaml_delimiter,
    link_destinations,
    split_lines,
    yaml_front_matter_range,
)

_MARKDOWN = MarkdownIt("commonmark")
_URL_RE = re.compile(r"https?://\S+")
_TOKEN_SPLIT_RE = re.compile(r"[\W_]+")

# Above this many DP cells the LCS falls back to difflib's matching blocks.
_EXACT_LCS_CELLS = 4_000_000


class ValidationReason(str, Enum):
    OK = "ok"
    LINE_COUNT = "line-count"
    CODE_FENCE = "code-fence"
    EMPTY_LINE = "empty-line"
    LIST_ITEM = "list-item"
    HTML_COMMENT = "html-comment"
    LINK_URL = "link-url"
    UNTRANSLATED = "untranslated"


@dataclass
class ValidationResult:
    """First structural mismatch between a source and a candidate translation."""
    ok: bool
    reason: ValidationReason
    line: int | None = None
    source: str | None = None
    target: str | None = None
    jaccard: float | None = None
    lcs: float | None = None

    @classmethod
    def passed(cls) -> "ValidationResult":
        return cls(ok=True, reason=ValidationReason.OK)


def prose_text(text: str) -> str:
    """Human-readable text of a markdown snippet.

    Code (fenced, indented, inline), images, HTML, link destinations, bare
    URLs, placeholders and front-matter keys are dropped.
    """
    lines = split_lines(text)
    yaml_range = yaml_front_matter_range(lines)
    kept = []
    for i, line in enumerate(lines):
        if yaml_range is not None and yaml_range[0] <= i <= yaml_range[1]:
            if is_yaml_delimiter(line):
                kept.append("")
                continue
            _key, sep, value = line.partition(":")
            kept.append(value.strip() if sep else line.strip())
            continue
        if is_placeholder(line):
            kept.append("")
            continue
        kept.append(line)

    parts = []
    for token in _MARKDOWN.parse("\n".join(kept)):
        if token.type != "inline":
            continue
        for child in token.children or []:
            if child.type == "text":
                parts.append(child.content)
    return _URL_RE.sub(" ", " ".join(parts))


def tokenize(text: str) -> list[str]:
    return [t for t in _TOKEN_SPLIT_RE.split(prose_text(text).lower()) if t]


def _lcs_length(a: list[str], b: list[str]) -> int:
    if len(a) * len(b) > _EXACT_LCS_CELLS:
        matcher = difflib.SequenceMatcher(None, a, b, autojunk=False)
        return sum(block.size for block in matcher.get_matching_blocks())
    if len(a) < len(b):
        a, b = b, a
    prev = [0] * (len(b) + 1)
    for x in a:
        cur = [0]
        for j, y in enumerate(b, start=1):
            if x == y:
                cur.append(prev[j - 1] + 1)
            else:
                cur.append(max(prev[j], cur[j - 1]))
        prev = cur
    return prev[-1]


def similarity(source_tokens: list[str], target_tokens: list[str]) -> tuple[float, float]:
    """(Jaccard of token sets, LCS length over the longer sequence)."""
    source_set, target_set = set(source_tokens), set(target_tokens)
    union = source_set | target_set
    if not union:
        return 0.0, 0.0
    jaccard = len(source_set & target_set) / len(union)
    longest = max(len(source_tokens), len(target_tokens))
    lcs = _lcs_length(source_tokens, target_tokens) / longest
    return jaccard, lcs


class Validator:
    """Checks that a translation keeps its source's line-level skeleton."""

    def __init__(
        self,
        jaccard_threshold: float = 0.8,
        lcs_threshold: float = 0.8,
        min_tokens: int = 4,
        mismatch_tolerance: float = 0.3,
    ):
        self.jaccard_threshold = jaccard_threshold
        self.lcs_threshold = lcs_threshold
        self.min_tokens = min_tokens
        self.mismatch_tolerance = mismatch_tolerance

    def validate(self, source: str, target: str) -> bool:
        return self.validate_detailed(source, target).ok

    def validate_detailed(
        self,
        source: str,
        target: str,
        check_untranslated: bool = True,
    ) -> ValidationResult:
        source_lines = split_lines(source)
        target_lines = split_lines(target)

        if len(source_lines) != len(target_lines):
            return ValidationResult(ok=False, reason=ValidationReason.LINE_COUNT)

        positional_rules = (
            (ValidationReason.CODE_FENCE, is_fence),
            (ValidationReason.EMPTY_LINE, is_blank),
            (ValidationReason.LIST_ITEM, is_list_item),
        )
        for reason, predicate in positional_rules:
            mismatch = self._first_mismatch(source_lines, target_lines, predicate, reason)
            if mismatch is not None:
                return mismatch

        mismatch = self._comment_mismatch(source_lines, target_lines)
        if mismatch is not None:
            return mismatch

        mismatch = self._link_url_mismatch(source_lines, target_lines)
        if mismatch is not None:
            return mismatch

        if check_untranslated:
            result = self.check_untranslated(source, target)
            if not result.ok:
                return result

        return ValidationResult.passed()

    def check_untranslated(self, source: str, target: str) -> ValidationResult:
        """Flag a target that is a (near-)verbatim copy of its source."""
        source_tokens = tokenize(source)
        target_tokens = tokenize(target)
        if len(set(source_tokens)) < self.min_tokens or not target_tokens:
            return ValidationResult.passed()
        jaccard, lcs = similarity(source_tokens, target_tokens)
        if jaccard >= self.jaccard_threshold and lcs >= self.lcs_threshold:
            return ValidationResult(
                ok=False,
                reason=ValidationReason.UNTRANSLATED,
                jaccard=jaccard,
                lcs=lcs,
            )
        return ValidationResult(ok=True, reason=ValidationReason.OK, jaccard=jaccard, lcs=lcs)

    def structure_matches(self, source: str, target: str) -> bool:
        """Lenient skeleton comparison used to accept cache hits and model output.

        Lines up to the last non-blank line of either text are classified as
        blank, comment-only and list item; up to ``floor(tolerance * n) + 1``
        classification mismatches are allowed.
        """
        source_lines = split_lines(source)
        target_lines = split_lines(target)
        last_source = _last_non_blank(source_lines)
        last_target = _last_non_blank(target_lines)
        if last_source == -1 and last_target == -1:
            return True

        max_compare = max(last_source, last_target)
        allowed = int((max_compare + 1) * self.mismatch_tolerance) + 1
        mismatches = 0
        for i in range(max_compare + 1):
            src = source_lines[i] if i < len(source_lines) else ""
            tgt = target_lines[i] if i < len(target_lines) else ""
            if (
                is_blank(src) != is_blank(tgt)
                or is_comment_only(src) != is_comment_only(tgt)
                or is_list_item(src) != is_list_item(tgt)
            ):
                mismatches += 1
        return mismatches <= allowed

    @staticmethod
    def _first_mismatch(
        source_lines: list[str],
        target_lines: list[str],
        predicate: Callable[[str], bool],
        reason: ValidationReason,
    ) -> ValidationResult | None:
        for i, (src, tgt) in enumerate(zip(source_lines, target_lines)):
            if predicate(src) != predicate(tgt):
                return ValidationResult(ok=False, reason=reason, line=i + 1, source=src, target=tgt)
        return None

    @staticmethod
    def _comment_mismatch(source_lines: list[str], target_lines: list[str]) -> ValidationResult | None:
        for i, (src, tgt) in enumerate(zip(source_lines, target_lines)):
            src_comment = is_comment_only(src)
            if src_comment != is_comment_only(tgt) or (src_comment and src != tgt):
                return ValidationResult(
                    ok=False,
                    reason=ValidationReason.HTML_COMMENT,
                    line=i + 1,
                    source=src,
                    target=tgt,
                )
        return None

    @staticmethod
    def _link_url_mismatch(source_lines: list[str], target_lines: list[str]) -> ValidationResult | None:
        for i, (src, tgt) in enumerate(zip(source_lines, target_lines)):
            target_urls = link_destinations(tgt)
            if not target_urls:
                continue
            if not set(target_urls) <= set(link_destinations(src)):
                return ValidationResult(
                    ok=False,
                    reason=ValidationReason.LINK_URL,
                    line=i + 1,
                    source=src,
                    target=tgt,
                )
        return None


def _last_non_blank(lines: list[str]) -> int:
    for i in range(len(lines) - 1, -1, -1):
        if not is_blank(lines[i]):
            return i
    return -1
