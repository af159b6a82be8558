"""CSS selector chain helpers for selectolax trees."""

from typing import Optional, Sequence

from selectolax.parser import HTMLParser


def first_text(tree: HTMLParser, selectors: Sequence[str]) -> Optional[str]:
    """Stripped text of the first selector whose node has non-empty text."""
    for selector in selectors:
        for node in tree.css(selector):
            text = node.text(deep=True, separator=" ", strip=True)
            if text:
                return " ".join(text.split())
    return None


def meta_content(tree: HTMLParser, *names: str) -> Optional[str]:
    """Content of the first <meta property|name|itemprop=...> present."""
    for name in names:
        for attr in ("property", "name", "itemprop"):
            node = tree.css_first(f'meta[{attr}="{name}"]')
            if node is not None:
                content = (node.attributes.get("content") or "").strip()
                if content:
                    return content
    return None
