"""Render model output as inline HTML.

The generation service answers in a small markdown subset:
*bold*, _italic_ and `code`. Lines are joined with explicit breaks.
"""
import html
import re
from typing import Iterator

LINE_BREAK = "<br />"

_COLON_ASTERISKS = re.compile(r"([:：])\*+")
_TRAILING_ASTERISKS = re.compile(r"\*+$")

_BOLD = re.compile(r"\*(.*?)\*")
_ITALIC = re.compile(r"_(.*?)_")
_CODE = re.compile(r"`(.*?)`")

_BREAK_TAG = re.compile(r"<br\s*/?>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]+>")


def _closing_asterisk(prefix: str) -> str:
    """One asterisk if prefix leaves a *span* open, otherwise nothing."""
    return "*" if prefix.count("*") % 2 else ""


def _clean_line(line: str) -> str:
    parts = []
    pos = 0
    for match in _COLON_ASTERISKS.finditer(line):
        parts.append(line[pos:match.end(1)])
        parts.append(_closing_asterisk("".join(parts)))
        pos = match.end()
    parts.append(line[pos:])
    line = "".join(parts)

    match = _TRAILING_ASTERISKS.search(line)
    if match:
        head = line[:match.start()]
        line = head + _closing_asterisk(head)
    return line


def clean_asterisks(text: str) -> str:
    """
    Drop stray asterisks after a colon and at the end of each line.

    A run that closes an open *span* keeps its closing asterisk, so
    "the role of *xylem*" stays bold while "Note:*" becomes "Note:".
    """
    return "\n".join(_clean_line(line) for line in text.split("\n"))


def format_line(line: str) -> str:
    line = _BOLD.sub(r"<strong>\1</strong>", line)
    line = _ITALIC.sub(r"<em>\1</em>", line)
    return _CODE.sub(r"<code>\1</code>", line)


def format_message(text: str) -> str:
    """
    Convert raw model output into inline display markup.

    Angle brackets and ampersands are escaped before any markup is added,
    so only the tags produced here reach the client.

    Args:
        text: Raw text from the generation service

    Returns:
        HTML fragment with <strong>, <em>, <code> and <br /> tags
    """
    text = clean_asterisks(text)
    escaped = html.escape(text, quote=False)
    return LINE_BREAK.join(format_line(line) for line in escaped.split("\n"))


def to_plain_text(markup: str) -> str:
    """Turn formatted markup back into copyable plain text."""
    text = _BREAK_TAG.sub("\n", markup)
    text = _ANY_TAG.sub("", text)
    return html.unescape(text)


def reveal_frames(text: str, step: int = 1) -> Iterator[str]:
    """
    Yield growing prefixes of text for the typing animation.

    The last frame is always the full text.
    """
    if step < 1:
        raise ValueError("step must be at least 1")
    if not text:
        yield ""
        return
    for end in range(step, len(text), step):
        yield text[:end]
    yield text
