import html as html_lib
import re
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote

from bs4 import BeautifulSoup, Comment

from mailqueue.settings import settings

_BLOCK_TAGS = ["p", "div", "tr", "li", "h1", "h2", "h3", "h4", "h5", "h6"]
_SPACES_RE = re.compile(r"[ \t\r\f\v]+")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")


def is_full_document(body: str) -> bool:
    head = body.lstrip()[:200].lower()
    return head.startswith("<!doctype html") or head.startswith("<html")


def unsubscribe_url(recipient: Optional[str] = None, site_url: Optional[str] = None) -> str:
    base = (site_url or settings.SITE_URL).rstrip("/")
    if recipient:
        return f"{base}/unsubscribe?email={quote(recipient)}"
    return f"{base}/unsubscribe"


def wrap_in_template(
    body: str,
    subject: Optional[str] = None,
    include_unsubscribe: bool = False,
    recipient: Optional[str] = None,
    brand_name: Optional[str] = None,
    site_url: Optional[str] = None,
) -> str:
    """
    Wraps an HTML fragment in the branded email layout.

    The first <h1>/<h2> of the fragment becomes the layout heading and is
    removed from the content; without one the subject is used. Complete
    documents are returned unchanged.
    """
    if is_full_document(body):
        return body

    brand = brand_name or settings.EMAIL_BRAND_NAME
    content = body
    heading = None

    soup = BeautifulSoup(body, "html.parser")
    first_heading = soup.find(["h1", "h2"])
    if first_heading is not None:
        heading = html_lib.escape(first_heading.get_text(" ", strip=True)) or None
        first_heading.decompose()
        content = str(soup).strip()
    if heading is None and subject:
        heading = html_lib.escape(subject)

    # Plain text bodies keep their line breaks
    if "<" not in content:
        content = content.replace("\n", "<br>")

    heading_row = ""
    if heading:
        heading_row = (
            '<tr><td style="padding: 30px 40px 20px 40px; text-align: center;">'
            f'<h2 style="margin: 0; font-size: 24px; font-weight: 400; color: #c9a962;">{heading}</h2>'
            "</td></tr>"
        )

    unsubscribe_row = ""
    if include_unsubscribe:
        link = html_lib.escape(unsubscribe_url(recipient, site_url), quote=True)
        unsubscribe_row = (
            '<p style="margin: 10px 0 0 0; font-size: 11px;">'
            f'<a href="{link}" style="color: #c9a962;">Unsubscribe</a></p>'
        )

    year = datetime.now(timezone.utc).year
    title = html_lib.escape(subject or brand)
    brand_escaped = html_lib.escape(brand)

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>{title}</title>
</head>
<body style="margin: 0; padding: 0; background-color: #0a0a0a; font-family: Georgia, 'Times New Roman', serif;">
<table role="presentation" cellspacing="0" cellpadding="0" border="0" width="100%">
<tr><td align="center" style="padding: 40px 20px;">
<table role="presentation" cellspacing="0" cellpadding="0" border="0" width="600" style="max-width: 600px; width: 100%; background-color: #050505;">
<tr><td style="padding: 40px 40px 30px 40px; text-align: center;">
<h1 style="margin: 0; font-size: 32px; font-weight: 300; letter-spacing: 2px; color: #c9a962; text-transform: uppercase;">{brand_escaped}</h1>
</td></tr>
{heading_row}
<tr><td style="padding: 20px 40px 40px 40px;">
<div style="font-size: 16px; line-height: 1.8; color: #a8a8a8;">
{content}
</div>
</td></tr>
<tr><td style="padding: 30px 40px; text-align: center; font-size: 11px; color: #a8a8a8;">
{unsubscribe_row}
<p style="margin: 20px 0 0 0;">&copy; {year} {brand_escaped}. All rights reserved.</p>
</td></tr>
</table>
</td></tr>
</table>
</body>
</html>"""


def html_to_text(body: str) -> str:
    """Plain-text alternative for an HTML body."""
    soup = BeautifulSoup(body, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(_BLOCK_TAGS):
        block.append("\n")

    text = _SPACES_RE.sub(" ", soup.get_text().replace("\xa0", " "))
    lines = [line.strip() for line in text.split("\n")]
    return _BLANK_LINES_RE.sub("\n\n", "\n".join(lines)).strip()
