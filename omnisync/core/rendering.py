"""Markdown rendering for articles and highlights.

HTML is converted with markdownify; highlight fragments are rendered
through Jinja2 templates. `decode_artifacts` cleans up what the conversion
leaves behind and is safe to apply any number of times.
"""

from __future__ import annotations

import html
import re
from datetime import tzinfo

from jinja2 import DictLoader, Environment, StrictUndefined
from markdownify import markdownify as md

from omnisync.core.timestamp_token import format_timestamp
from omnisync.providers.content_types import Article, Highlight

OMNIVORE_APP_URL = "https://omnivore.app/me/"

HIGHLIGHT_TEMPLATES: dict[str, str] = {
    "default": """
**{{ article.title }}**

> {{ quote | blockquote }}{% if annotation %}
> **Note**: {{ annotation | blockquote }}{% endif %}
> ({{ created_at }})

**Author**: {{ article.author }}
**Published**: {{ article.published_at }}
**URL**: [Omnivore]({{ article.omnivore_url }}), [Original]({{ article.original_article_url }})
""",
    "titleQuote": """
[{{ article.title }}]({{ article.omnivore_url }})
> {{ quote | blockquote }}{% if annotation %}
> **Note**: {{ annotation | blockquote }}{% endif %}
> ({{ created_at }})
""",
    "quoteOnly": """
> {{ quote | blockquote }}{% if annotation %}
> **Note**: {{ annotation | blockquote }}{% endif %}
> ({{ created_at }})
""",
}

BACKSLASH_ESCAPE_RE = re.compile(r"\\([\[\]_*`#+\-.!()|<>~])")
PERCENT_RUN_RE = re.compile(r"(?:%[0-9A-Fa-f]{2})+")
BLANK_LINES_RE = re.compile(r"\n{3,}")
HEADING_RE = re.compile(r"^(#{1,6} .*)$", re.MULTILINE)
EMPTY_LINK_RE = re.compile(r"\[\]\([^)]*\)")


def _blockquote(text: str) -> str:
    """Continue a blockquote across the lines of a multi-line value."""
    return "\n> ".join(text.splitlines()) if text else ""


_env = Environment(
    loader=DictLoader({name: tpl.strip() for name, tpl in HIGHLIGHT_TEMPLATES.items()}),
    autoescape=False,
    undefined=StrictUndefined,
)
_env.filters["blockquote"] = _blockquote


def _decode_percent_run(match: re.Match) -> str:
    raw = match.group(0)
    try:
        return bytes.fromhex(raw.replace("%", "")).decode("utf-8")
    except UnicodeDecodeError:
        return raw


def _decode_once(text: str) -> str:
    text = html.unescape(text)
    text = BACKSLASH_ESCAPE_RE.sub(r"\1", text)
    return PERCENT_RUN_RE.sub(_decode_percent_run, text)


def decode_artifacts(text: str) -> str:
    """Resolve entities, markdown backslash escapes and percent escapes.

    Runs to a fixed point, so the result is stable under re-application
    (`&amp;lt;` ends up as `<` whether decoded once or twice). Every
    changing step shortens the text, so the loop terminates. Anything
    unrecognized is left as is.
    """
    while True:
        decoded = _decode_once(text)
        if decoded == text:
            return text
        text = decoded


def _strip_heading_links(match: re.Match) -> str:
    return EMPTY_LINK_RE.sub("", match.group(1)).rstrip()


def render_html(fragment: str | None) -> str:
    """Convert an HTML fragment to normalized markdown."""
    if not fragment:
        return ""
    markdown = md(fragment, heading_style="ATX", bullets="-")
    # Anchor links inside headings come through as empty links
    markdown = HEADING_RE.sub(_strip_heading_links, markdown)
    markdown = BLANK_LINES_RE.sub("\n\n", markdown)
    return markdown.strip()


def render_article(article: Article) -> str:
    """Markdown body for an article note."""
    return render_html(article.content)


def omnivore_url(highlight: Highlight) -> str:
    ref = highlight.article
    return OMNIVORE_APP_URL + (ref.slug or ref.id or highlight.id)


def render_highlight(highlight: Highlight, template_name: str, tz: tzinfo | None = None) -> str:
    """Render one highlight as a note fragment.

    The fragment always carries the creation-time token the append
    engine deduplicates and sorts on.
    """
    ref = highlight.article
    template = _env.get_template(template_name)
    rendered = template.render(
        article={
            "title": decode_artifacts(ref.title),
            "author": decode_artifacts(ref.author or "Unknown"),
            "published_at": format_timestamp(ref.published_at, tz) if ref.published_at else "Unknown",
            "omnivore_url": omnivore_url(highlight),
            "original_article_url": ref.original_article_url or ref.url,
        },
        quote=decode_artifacts(render_html(highlight.quote)),
        annotation=decode_artifacts(render_html(highlight.annotation)) if highlight.annotation else None,
        created_at=format_timestamp(highlight.created_at, tz),
    )
    return rendered.strip()
