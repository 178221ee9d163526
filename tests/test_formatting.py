"""Template formatting tests."""

from __future__ import annotations

import pytest

from roomwarden.formatting import markdown_to_html, markdown_to_plain, pill, render


class TestMarkdown:
    def test_bold_italic_code(self) -> None:
        html = markdown_to_html("**bold** *it* `a*b*c`")
        assert html == "<strong>bold</strong> <em>it</em> <code>a*b*c</code>"

    def test_html_escaped(self) -> None:
        assert markdown_to_html("<script>") == "&lt;script&gt;"

    def test_links(self) -> None:
        html = markdown_to_html("[docs](https://example.org/x)")
        assert html == '<a href="https://example.org/x">docs</a>'
        assert markdown_to_plain("[docs](https://example.org/x)") == "docs (https://example.org/x)"

    def test_newlines(self) -> None:
        assert markdown_to_html("a\nb") == "a<br/>b"

    def test_pill(self) -> None:
        text = f"hi {pill('@alice:example.org')}"
        assert markdown_to_plain(text) == "hi @alice:example.org"
        assert markdown_to_html(text) == (
            'hi <a href="https://matrix.to/#/@alice:example.org">@alice:example.org</a>'
        )


class TestRender:
    def test_render_pair(self) -> None:
        plain, html = render("Hi **{name}**", {"name": "bob"})
        assert plain == "Hi bob"
        assert html == "Hi <strong>bob</strong>"

    def test_unknown_field(self) -> None:
        with pytest.raises(KeyError):
            render("Hi {missing}", {})
