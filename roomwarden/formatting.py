"""Message formatting — template markup to Matrix bodies.

Templates are written in a small markdown subset (``**bold**``, ``*italic*``,
`` `code` ``, ``[text](url)``, line breaks). ``render`` produces the plain
``body`` and the ``org.matrix.custom.html`` ``formatted_body`` Matrix expects.
Member pills are inserted as placeholders so they survive HTML escaping.
"""

from __future__ import annotations

import html
import re
from typing import Any

_CODE_RE = re.compile(r"`([^`]+)`")
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
_ITALIC_RE = re.compile(r"(?<!\*)\*(?!\*)(.+?)(?<!\*)\*(?!\*)")
_LINK_RE = re.compile(r"\[([^\]]+)\]\((https?://[^)\s]+)\)")
_PILL_RE = re.compile(r"\x00pill:([^\x00]+)\x00")


def pill(member_id: str) -> str:
    """Placeholder for a clickable mention of ``member_id``."""
    return f"\x00pill:{member_id}\x00"


def _link(m: re.Match) -> str:
    url = m.group(2).replace('"', "%22")
    return f'<a href="{url}">{m.group(1)}</a>'


def markdown_to_html(text: str) -> str:
    """Convert the supported markdown subset to Matrix HTML."""
    out = html.escape(text, quote=False)
    # Code spans first so their contents are not formatted further
    codes: list[str] = []

    def _stash(m: re.Match) -> str:
        codes.append(m.group(1))
        return f"\x01{len(codes) - 1}\x01"

    out = _CODE_RE.sub(_stash, out)
    out = _LINK_RE.sub(_link, out)
    out = _BOLD_RE.sub(r"<strong>\1</strong>", out)
    out = _ITALIC_RE.sub(r"<em>\1</em>", out)
    out = re.sub(r"\x01(\d+)\x01", lambda m: f"<code>{codes[int(m.group(1))]}</code>", out)
    out = _PILL_RE.sub(
        lambda m: (
            f'<a href="https://matrix.to/#/{html.escape(m.group(1))}">'
            f"{html.escape(m.group(1))}</a>"
        ),
        out,
    )
    return out.replace("\n", "<br/>")


def markdown_to_plain(text: str) -> str:
    """Strip markup, keeping the readable text."""
    out = _CODE_RE.sub(r"\1", text)
    out = _LINK_RE.sub(r"\1 (\2)", out)
    out = _BOLD_RE.sub(r"\1", out)
    out = _ITALIC_RE.sub(r"\1", out)
    return _PILL_RE.sub(r"\1", out)


def render(template: str, variables: dict[str, Any]) -> tuple[str, str]:
    """Fill ``template`` and return ``(plain_body, html_body)``.

    Raises KeyError/IndexError when the template references unknown fields.
    """
    text = template.format(**variables)
    return markdown_to_plain(text), markdown_to_html(text)
