"""
Content Rendering

Placeholder substitution, email tracking instrumentation and channel
length limits applied by the delivery processor.
"""

import html
import re
from typing import Any, Dict, Optional
from urllib.parse import quote

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+(?:\.\w+)*)\s*\}\}")
ANCHOR_HREF_PATTERN = re.compile(
    r"(<a\b[^>]*?\bhref\s*=\s*)([\"'])(.*?)\2",
    re.IGNORECASE | re.DOTALL,
)
BODY_CLOSE_PATTERN = re.compile(r"</body\s*>", re.IGNORECASE)

UNTRACKED_LINK_PREFIXES = ("mailto:", "tel:", "#", "sms:", "javascript:")
DEFAULT_SMS_LIMIT = 160
SMS_ELLIPSIS = "..."

_MISSING = object()


def _lookup(data: Dict[str, Any], path: str) -> Any:
    value: Any = data
    for key in path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return _MISSING
    return value


def render_template(template: Optional[str], data: Dict[str, Any]) -> str:
    """
    Substitute {{key}} placeholders (dotted paths allowed) from data.

    Placeholders whose key is missing or None stay in the output verbatim.
    """
    if not template:
        return template or ""

    def replace_var(match: "re.Match[str]") -> str:
        value = _lookup(data, match.group(1))
        if value is _MISSING or value is None:
            return match.group(0)
        return str(value)

    return PLACEHOLDER_PATTERN.sub(replace_var, template)


def generate_html_from_text(text: str, unsubscribe_url: Optional[str] = None) -> str:
    """Wrap each line of plain text in a paragraph inside a minimal email body"""
    paragraphs = "".join(f"<p>{html.escape(line)}</p>" for line in text.split("\n"))
    footer = ""
    if unsubscribe_url:
        footer = (
            '<hr style="margin: 30px 0; border: none; border-top: 1px solid #eee;">'
            '<p style="font-size: 12px; color: #666;">'
            "If you no longer wish to receive these emails, "
            f'<a href="{html.escape(unsubscribe_url)}" style="color: #007cba;">unsubscribe here</a>.'
            "</p>"
        )
    return (
        '<html><body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">'
        '<div style="max-width: 600px; margin: 0 auto; padding: 20px;">'
        f"{paragraphs}{footer}"
        "</div></body></html>"
    )


def inject_open_pixel(html_body: str, pixel_url: str) -> str:
    """Insert a 1x1 tracking image before </body>, or append it"""
    pixel = (
        f'<img src="{html.escape(pixel_url)}" width="1" height="1" alt="" '
        'style="display:none" />'
    )
    matches = list(BODY_CLOSE_PATTERN.finditer(html_body))
    if not matches:
        return html_body + pixel
    position = matches[-1].start()
    return html_body[:position] + pixel + html_body[position:]


def rewrite_links(html_body: str, click_url_builder, exclude_prefix: Optional[str] = None) -> str:
    """Point anchor hrefs at the click-tracking redirect, except links under exclude_prefix"""

    def replace_href(match: "re.Match[str]") -> str:
        prefix, quote_char, target = match.group(1), match.group(2), match.group(3)
        stripped = target.strip()
        if not stripped or stripped.lower().startswith(UNTRACKED_LINK_PREFIXES):
            return match.group(0)
        if exclude_prefix and html.unescape(stripped).startswith(exclude_prefix):
            return match.group(0)
        tracked = html.escape(click_url_builder(html.unescape(stripped)))
        return f"{prefix}{quote_char}{tracked}{quote_char}"

    return ANCHOR_HREF_PATTERN.sub(replace_href, html_body)


def truncate_sms(body: str, limit: int = DEFAULT_SMS_LIMIT) -> str:
    """Cut the body to the transport limit, marking the cut with an ellipsis"""
    if len(body) <= limit:
        return body
    return body[: max(0, limit - len(SMS_ELLIPSIS))] + SMS_ELLIPSIS


class TrackingUrlBuilder:
    """Builds public tracking URLs for one deployment"""

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")
        self.track_prefix = f"{self.base_url}/campaigns/track/"

    def open_url(self, campaign_id: str, recipient_id: str) -> str:
        return f"{self.base_url}/campaigns/track/open/{quote(campaign_id, safe='')}/{quote(recipient_id, safe='')}"

    def click_url(self, campaign_id: str, recipient_id: str, target: str) -> str:
        return (
            f"{self.base_url}/campaigns/track/click/{quote(campaign_id, safe='')}/"
            f"{quote(recipient_id, safe='')}?url={quote(target, safe='')}"
        )

    def unsubscribe_url(self, campaign_id: str, recipient_id: str) -> str:
        return f"{self.base_url}/campaigns/track/unsubscribe/{quote(campaign_id, safe='')}/{quote(recipient_id, safe='')}"


__all__ = [
    "DEFAULT_SMS_LIMIT",
    "TrackingUrlBuilder",
    "generate_html_from_text",
    "inject_open_pixel",
    "render_template",
    "rewrite_links",
    "truncate_sms",
]
