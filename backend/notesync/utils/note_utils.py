"""Note payload helpers shared by the sync endpoint and the client replica."""

from __future__ import annotations

from bs4 import BeautifulSoup


def extract_plain_text(html: str | None) -> str:
    """Extract plain text from an HTML note body.

    Uses BeautifulSoup with the ``lxml`` parser.  ``<script>`` and
    ``<style>`` elements are removed and whitespace is collapsed.
    """
    if not html or not html.strip():
        return ""

    soup = BeautifulSoup(html, "lxml")

    for tag in soup(["script", "style"]):
        tag.decompose()

    return " ".join(soup.get_text(separator=" ").split())


def normalize_tags(tags: list[str] | dict | None) -> list[str]:
    """Normalize a tag field to a list of unique, trimmed, non-empty names.

    Order of first appearance is kept.  A dict (legacy shape) contributes
    its values.
    """
    if tags is None:
        return []
    if isinstance(tags, dict):
        tags = list(tags.values())
    if not isinstance(tags, list):
        return []

    seen: set[str] = set()
    names: list[str] = []
    for raw in tags:
        if not isinstance(raw, str):
            continue
        name = raw.strip()
        if name and name not in seen:
            seen.add(name)
            names.append(name)
    return names
