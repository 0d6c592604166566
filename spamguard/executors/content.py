"""Reduce email bodies to compact plain text before they reach the LLM.

Marketing and phishing mail is often HTML-only and mostly markup; sending the
text content instead keeps prompts small.
"""

import re

from bs4 import BeautifulSoup

from spamguard.schemas.processing import SimplifyMode

_HTML_HINT = re.compile(r"<\s*(html|body|div|p|table|br|span|a)\b", re.IGNORECASE)


def looks_like_html(text: str) -> bool:
    return bool(text) and _HTML_HINT.search(text) is not None


def html_to_text(html: str, mode: SimplifyMode = SimplifyMode.AGGRESSIVE) -> str:
    """Convert an HTML body to structured plain text.

    ``standard`` keeps link targets as ``text (url)``; ``aggressive`` drops
    links, images and all layout whitespace.
    """
    if not html:
        return ""

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head", "noscript"]):
        tag.decompose()

    if mode == SimplifyMode.AGGRESSIVE:
        for img in soup.find_all("img"):
            img.decompose()
    else:
        for img in soup.find_all("img"):
            alt = (img.get("alt") or "").strip()
            img.replace_with(f"[image: {alt}]" if alt else "")
        for link in soup.find_all("a"):
            href = (link.get("href") or "").strip()
            label = link.get_text(" ", strip=True)
            if href and not href.startswith(("#", "mailto:")) and href != label:
                link.replace_with(f"{label} ({href})" if label else href)

    text = soup.get_text(separator="\n")
    return normalize_whitespace(text, mode)


def normalize_whitespace(text: str, mode: SimplifyMode = SimplifyMode.AGGRESSIVE) -> str:
    lines = [re.sub(r"[ \t\xa0]+", " ", line).strip() for line in text.splitlines()]
    if mode == SimplifyMode.AGGRESSIVE:
        lines = [line for line in lines if line]
        return "\n".join(lines)
    text = "\n".join(lines)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def simplify_email_content(
    body: str,
    body_html: str = "",
    mode: SimplifyMode = SimplifyMode.AGGRESSIVE,
) -> str:
    """Best plain-text rendering of an email body.

    Prefers the HTML part when it exists (it is usually the complete one),
    and treats a ``body`` that is really HTML the same way.
    """
    if body_html:
        text = html_to_text(body_html, mode)
        if text:
            return text
    if looks_like_html(body):
        return html_to_text(body, mode)
    return normalize_whitespace(body, mode)
