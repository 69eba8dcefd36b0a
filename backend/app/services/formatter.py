"""
Reply formatting for the WhatsApp channel.

Model output arrives as free-form prose or markdown. WhatsApp only renders a
small inline subset (*bold*, _italic_, ~strike~), and a single message body is
capped, so the text is normalized first and then split into an ordered list of
bounded-length chunks.

Splitting is greedy: paragraphs are packed into a chunk while they fit; a
paragraph that is too long on its own is packed sentence by sentence; a
sentence that is still too long is sent as its own oversized chunk rather than
truncated. When more than one chunk results, each is prefixed with
"Part i/N", and the marker counts toward the chunk limit.
"""

import re
from typing import Optional

from app.models.pipeline import MessageChunk

DEFAULT_MAX_CHUNK_LENGTH = 1500

NO_CONTENT_PLACEHOLDER = "No content available"

PARAGRAPH_SEPARATOR = "\n\n"

# C0 controls and DEL, except tab and newline
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_CODE_FENCE = re.compile(r"^[ \t]*```[^\n]*(?:\n|$)", re.MULTILINE)
_INLINE_CODE = re.compile(r"`([^`\n]+)`")
_HORIZONTAL_RULE = re.compile(r"^[ \t]*([-*_])(?:[ \t]*\1){2,}[ \t]*$", re.MULTILINE)
_HEADING = re.compile(r"^[ \t]*#{1,6}[ \t]+", re.MULTILINE)
_BULLET = re.compile(r"^[ \t]*[-*+•][ \t]+", re.MULTILINE)
_BOLD_RUN = re.compile(r"\*{2,}")
_DOUBLE_UNDERSCORE = re.compile(r"(?<!\w)__(\S(?:.*?\S)?)__(?!\w)")
_STRIKE_RUN = re.compile(r"~{2,}")
_LINK = re.compile(r"\[([^\]\n]+)\]\((https?://[^)\s]+)\)")
_TRAILING_SPACE = re.compile(r"[ \t]+$", re.MULTILINE)
_EXTRA_NEWLINES = re.compile(r"\n{3,}")

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])(\s+)")
_PART_MARKER = re.compile(r"^Part \d+/\d+\n\n")


def clean_markdown_for_whatsapp(text: Optional[str]) -> str:
    """
    Strip markup WhatsApp cannot render and keep only its inline emphasis.

    Code fences lose their fence lines but keep their contents, so no
    extracted text is dropped. Numbered list markers are kept because they
    are usually part of the document being digitized.
    """
    if not text:
        return ""

    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS.sub("", text)

    text = _CODE_FENCE.sub("", text)
    text = _INLINE_CODE.sub(r"\1", text)

    # Rules before bullets: "* * *" would otherwise read as a bullet
    text = _HORIZONTAL_RULE.sub("", text)
    text = _HEADING.sub("", text)
    text = _BULLET.sub("", text)

    text = _BOLD_RUN.sub("*", text)
    text = _DOUBLE_UNDERSCORE.sub(r"_\1_", text)
    text = _STRIKE_RUN.sub("~", text)
    text = _LINK.sub(r"\1 (\2)", text)

    text = _TRAILING_SPACE.sub("", text)
    text = _EXTRA_NEWLINES.sub(PARAGRAPH_SEPARATOR, text)
    return text.strip()


def split_sentences(paragraph: str) -> list[str]:
    """Split on ., ! or ? followed by whitespace. Terminal punctuation stays."""
    return [s for s in _SENTENCE_BOUNDARY.split(paragraph)[::2] if s]


def _sentences_with_separators(paragraph: str) -> list[tuple[str, str]]:
    """(whitespace before, sentence) pairs; the first sentence has none."""
    parts = _SENTENCE_BOUNDARY.split(paragraph)
    pairs = [("", parts[0])] + list(zip(parts[1::2], parts[2::2]))
    return [(separator, sentence) for separator, sentence in pairs if sentence]


def split_into_chunks(text: str, max_length: int) -> list[str]:
    """
    Greedy paragraph -> sentence -> verbatim split of already-clean text.

    Returns the chunk texts without part markers. Every chunk is at most
    max_length characters unless it is a single sentence longer than that.
    """
    if len(text) <= max_length:
        return [text]

    chunks: list[str] = []
    buffer = ""

    for paragraph in text.split(PARAGRAPH_SEPARATOR):
        if not paragraph.strip():
            continue

        if len(paragraph) <= max_length:
            pieces = [("", paragraph)]
        else:
            pieces = _sentences_with_separators(paragraph)

        # Sentences rejoin with their own whitespace, so line breaks survive
        for position, (separator, piece) in enumerate(pieces):
            joiner = PARAGRAPH_SEPARATOR if position == 0 else separator
            candidate = f"{buffer}{joiner}{piece}" if buffer else piece
            if len(candidate) <= max_length:
                buffer = candidate
                continue
            if buffer:
                chunks.append(buffer)
            # May exceed max_length when piece is one oversized sentence
            buffer = piece

    if buffer:
        chunks.append(buffer)

    return chunks


def part_marker(index: int, total: int) -> str:
    return f"Part {index}/{total}{PARAGRAPH_SEPARATOR}"


def strip_part_marker(text: str) -> str:
    return _PART_MARKER.sub("", text, count=1)


def _split_reserving_markers(text: str, max_length: int) -> list[str]:
    """
    Split so that marker + chunk fits in max_length.

    The marker width depends on the number of chunks, so the split is redone
    with a wider reservation until the digit count stabilises.
    """
    total_guess = 9
    while True:
        budget = max_length - len(part_marker(total_guess, total_guess))
        if budget < 1:
            raise ValueError(f"max_length {max_length} is too small for part markers")
        pieces = split_into_chunks(text, budget)
        if len(str(len(pieces))) <= len(str(total_guess)):
            return pieces
        total_guess = 10 ** len(str(len(pieces))) - 1


def format_for_channel(
    raw_text: Optional[str],
    max_length: int = DEFAULT_MAX_CHUNK_LENGTH,
) -> list[MessageChunk]:
    """
    Turn model output into the ordered chunk sequence to send.

    Never returns an empty list or an empty chunk: blank input becomes a
    single placeholder chunk.
    """
    text = clean_markdown_for_whatsapp(raw_text)
    if not text:
        return [MessageChunk(index=1, total=1, text=NO_CONTENT_PLACEHOLDER)]

    if len(text) <= max_length:
        return [MessageChunk(index=1, total=1, text=text)]

    pieces = _split_reserving_markers(text, max_length)
    total = len(pieces)
    if total == 1:
        return [MessageChunk(index=1, total=1, text=pieces[0])]

    return [
        MessageChunk(index=i, total=total, text=f"{part_marker(i, total)}{piece}")
        for i, piece in enumerate(pieces, start=1)
    ]
