"""Split documents into translation-safe chunks and back.

Fenced code blocks never reach the model: they are swapped for one-line
``CODE_BLOCK_<n>`` placeholders before chunking and put back verbatim after
the chunks are translated and joined.
"""

import re

from docs_translate.lines import PLACEHOLDER_RE, split_lines

# Opening/closing fence, optionally behind indentation or a list marker.
FENCE_OPEN_RE = re.compile(r"^\s*(?:(?:[-*]|\d+[.)])\s+)?```")

PARAGRAPH_SEPARATOR = "\n\n"


def _byte_size(text: str) -> int:
    return len(text.encode("utf-8"))


def extract_code_blocks(content: str) -> tuple[str, list[str]]:
    """Replace fenced code blocks with placeholders.

    Returns the placeholderized text and the blocks, where ``blocks[n]`` is
    the verbatim text behind ``CODE_BLOCK_<n>`` (both fence lines included).
    An unterminated block at the end of the document is still captured.
    """
    blocks: list[str] = []
    out: list[str] = []
    current: list[str] = []
    in_code = False

    for line in split_lines(content):
        if FENCE_OPEN_RE.match(line):
            if not in_code:
                in_code = True
                current = [line]
            else:
                current.append(line)
                blocks.append("\n".join(current))
                out.append(f"CODE_BLOCK_{len(blocks) - 1}")
                in_code = False
                current = []
            continue
        if in_code:
            current.append(line)
            continue
        out.append(line)

    if in_code:
        blocks.append("\n".join(current))
        out.append(f"CODE_BLOCK_{len(blocks) - 1}")

    return "\n".join(out), blocks


def restore_code_blocks(content: str, blocks: list[str]) -> str:
    """Swap placeholder lines back for their blocks; unknown indices stay as-is."""
    out = []
    for line in split_lines(content):
        match = PLACEHOLDER_RE.match(line)
        if match:
            index = int(match.group(1))
            out.append(blocks[index] if index < len(blocks) else line)
            continue
        out.append(line)
    return "\n".join(out)


def split_into_chunks(content: str, max_bytes: int) -> list[str]:
    """Split text on paragraph boundaries into chunks of at most ``max_bytes``.

    Joining the result with a blank line (``"\\n\\n"``) gives back ``content``
    exactly. A paragraph larger than ``max_bytes`` becomes a chunk of its own.
    Extra newlines that would open a chunk are folded onto the previous one,
    so only the first chunk of a document can start with a blank line.
    """
    if content == "":
        return []

    pieces = content.split(PARAGRAPH_SEPARATOR)
    chunks: list[str] = []
    current = pieces[0]
    current_size = _byte_size(current)

    for piece in pieces[1:]:
        lead = len(piece) - len(piece.lstrip("\n"))
        if lead:
            current += "\n" * lead
            current_size += lead
            piece = piece[lead:]

        if piece == "":
            current += PARAGRAPH_SEPARATOR
            current_size += 2
            continue

        piece_size = _byte_size(piece)
        has_content = current.strip("\n") != ""
        if has_content and current_size + piece_size + 2 > max_bytes:
            chunks.append(current)
            current = piece
            current_size = piece_size
        else:
            current += PARAGRAPH_SEPARATOR + piece
            current_size += piece_size + 2

    chunks.append(current)
    return chunks


def split_values_text(values_text: str, max_bytes: int) -> list[str]:
    """Line-oriented variant for front-matter values: one value per line."""
    chunks: list[str] = []
    current = ""
    current_size = 0

    for line in split_lines(values_text):
        line_size = _byte_size(line)
        if current != "" and current_size + 1 + line_size > max_bytes:
            chunks.append(current)
            current = line
            current_size = line_size
            continue
        separator = "" if current == "" else "\n"
        current += separator + line
        current_size += len(separator) + line_size

    if current != "":
        chunks.append(current)
    return chunks


def chunk_index_for_line(
    content_with_placeholders: str,
    blocks: list[str],
    max_bytes: int,
    line_number: int,
) -> int | None:
    """1-based chunk number whose source lines contain ``line_number``.

    ``line_number`` refers to the original document, so every placeholder is
    expanded back to its block's height while walking the chunks.
    """
    cursor = 1
    for index, chunk in enumerate(split_into_chunks(content_with_placeholders, max_bytes), start=1):
        height = 0
        for line in split_lines(chunk):
            match = PLACEHOLDER_RE.match(line)
            if match and int(match.group(1)) < len(blocks):
                height += len(split_lines(blocks[int(match.group(1))]))
            else:
                height += 1
        end = cursor + height - 1
        if cursor <= line_number <= end:
            return index
        # the "\n\n" joiner between chunks is one extra blank line
        cursor = end + 2
    return None
