"""Markdown note sections and their XHTML narratives."""

import html
import re
from typing import Optional

XHTML_NS = "http://www.w3.org/1999/xhtml"

# Each H2 section runs through the next H2 or the end of the text (LF or CRLF)
H2_SECTION_RE = re.compile(r"(?:^|\r?\n)##[ \t]*(.*?)[ \t]*\r?\n(.*?)(?=\r?\n##\s|\Z)", re.DOTALL)
H3_RE = re.compile(r"^###\s*(.+?)\s*$")
BOLD_RE = re.compile(r"\*\*(.+?)\*\*")


def canonicalize_header(header: str) -> str:
    """Lowercase, alphanumerics and single spaces only."""
    text = re.sub(r"[^a-z0-9\s]", "", header.lower())
    return re.sub(r"\s+", " ", text).strip()


def extract_sections(note_text: str) -> dict[str, str]:
    """Map canonical H2 title -> section body (stripped)."""
    return {
        canonicalize_header(m.group(1)): m.group(2).strip()
        for m in H2_SECTION_RE.finditer(note_text or "")
    }


def section_titles(note_text: str) -> list[str]:
    """H2 titles in document order, as written."""
    return [m.group(1).strip() for m in H2_SECTION_RE.finditer(note_text or "")]


def _inline(text: str) -> str:
    return BOLD_RE.sub(r"<b>\1</b>", html.escape(text, quote=False))


def _render_block(block: str) -> str:
    lines = [l.rstrip() for l in block.splitlines() if l.strip()]
    heading = H3_RE.match(lines[0]) if lines else None
    if heading and len(lines) == 1:
        return f"<h3>{_inline(heading.group(1))}</h3>"
    if heading:
        return f"<h3>{_inline(heading.group(1))}</h3>" + _render_block("\n".join(lines[1:]))
    if all(l.lstrip().startswith(("- ", "* ")) for l in lines):
        items = "".join(f"<li>{_inline(l.lstrip()[2:])}</li>" for l in lines)
        return f"<ul>{items}</ul>"
    return "<p>" + "<br/>".join(_inline(l) for l in lines) + "</p>"


def render_markdown_xhtml(content: str) -> str:
    """Render a small Markdown subset as an XHTML narrative div."""
    blocks = re.split(r"\r?\n\s*\r?\n", content.strip())
    body = "".join(_render_block(b) for b in blocks if b.strip())
    return f'<div xmlns="{XHTML_NS}">{body}</div>'


def render_section_narrative(note_text: str, section_title: str) -> Optional[str]:
    """XHTML narrative for one H2 section, or None when the note lacks it."""
    content = extract_sections(note_text).get(canonicalize_header(section_title))
    if content is None:
        return None
    return render_markdown_xhtml(content)


def missing_section_div(section_title: str) -> str:
    return f'<div xmlns="{XHTML_NS}"><p>Section "{html.escape(section_title)}" not found in note.</p></div>'
