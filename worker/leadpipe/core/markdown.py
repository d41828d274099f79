"""Render crawled pages into one markdown document for the scoring stage."""

import re
from typing import Iterable, List, Tuple

from bs4 import BeautifulSoup, NavigableString, Tag

MAX_MARKDOWN_CHARS = 60_000

# Pages most useful for qualification come first in the combined document.
PRIORITY_PATHS = ("about", "team", "staff", "leadership", "contact", "services", "our-story")

_STRIP_TAGS = ("script", "style", "noscript", "svg", "img", "iframe", "figure", "form", "nav", "footer")
_BLOCK_SPACING = re.compile(r"\n{3,}")


def page_priority(url: str) -> int:
    lowered = url.lower()
    for index, keyword in enumerate(PRIORITY_PATHS):
        if keyword in lowered:
            return index
    return len(PRIORITY_PATHS)


def _inline(node) -> str:
    if isinstance(node, NavigableString):
        return re.sub(r"\s+", " ", str(node))
    if not isinstance(node, Tag):
        return ""
    text = "".join(_inline(child) for child in node.children)
    if node.name in ("strong", "b") and text.strip():
        return f"**{text.strip()}**"
    if node.name in ("em", "i") and text.strip():
        return f"*{text.strip()}*"
    if node.name == "a" and node.get("href") and text.strip():
        return f"[{text.strip()}]({node['href']})"
    if node.name == "br":
        return "\n"
    return text


def _blocks(node: Tag) -> List[str]:
    out: List[str] = []
    for child in node.children:
        if isinstance(child, NavigableString):
            text = str(child).strip()
            if text:
                out.append(re.sub(r"\s+", " ", text))
            continue
        if not isinstance(child, Tag):
            continue
        name = child.name
        if name and re.fullmatch(r"h[1-6]", name):
            text = _inline(child).strip()
            if text:
                out.append(f"{'#' * int(name[1])} {text}")
        elif name in ("p", "blockquote"):
            text = _inline(child).strip()
            if text:
                out.append(f"> {text}" if name == "blockquote" else text)
        elif name in ("ul", "ol"):
            items = child.find_all("li", recursive=False)
            for index, item in enumerate(items, start=1):
                text = _inline(item).strip()
                if text:
                    out.append(f"{index}. {text}" if name == "ol" else f"- {text}")
        elif name == "table":
            for row in child.find_all("tr"):
                cells = [c.get_text(" ", strip=True) for c in row.find_all(["td", "th"])]
                if any(cells):
                    out.append("| " + " | ".join(cells) + " |")
        else:
            out.extend(_blocks(child))
    return out


def html_to_markdown(soup: BeautifulSoup) -> str:
    """Convert a parsed page into markdown; the soup is not modified."""
    working = BeautifulSoup(str(soup), "html.parser")
    for tag in working.find_all(list(_STRIP_TAGS)):
        tag.decompose()
    root = working.body or working
    text = "\n\n".join(_blocks(root))
    return _BLOCK_SPACING.sub("\n\n", text).strip()


def combine_pages(pages: Iterable[Tuple[str, str, str]], max_chars: int = MAX_MARKDOWN_CHARS) -> str:
    """Join ``(url, title, markdown)`` pages, priority pages first, capped."""
    ordered = sorted(pages, key=lambda page: (page_priority(page[0]), page[0]))
    sections: List[str] = []
    used = 0
    for url, title, body in ordered:
        header = f"# {title or url}\n\nSource: {url}\n\n"
        section = header + body
        if used + len(section) > max_chars:
            remaining = max_chars - used
            if remaining > len(header):
                sections.append(section[:remaining])
            break
        sections.append(section)
        used += len(section) + 2
    return "\n\n".join(sections)
