"""Turn untrusted feed-item markup into a small, allow-listed document tree.

``build`` accepts a meaningful subset of HTML4 and never fails: whatever the
input, the result is a best-effort tree. The renderer only ever sees the tree,
never the raw markup. The same bytes always produce the same tree.
"""

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from html.parser import HTMLParser
from urllib.parse import urljoin, urlsplit

from syncfeed.models import MediaRef, media_ref

logger = logging.getLogger(__name__)

ALLOWED_TAGS = frozenset({
    "p", "br", "hr",
    "h1", "h2", "h3", "h4", "h5", "h6",
    "ul", "ol", "li",
    "blockquote", "pre",
    "em", "strong",
    "a", "img",
})

# Presentational spellings folded into their allowed equivalent.
TAG_ALIASES = {"i": "em", "b": "strong"}

ALLOWED_ATTRIBUTES = {
    "a": ("href",),
    "img": ("src", "alt"),
}

# Attributes holding a URL; only http(s) survives.
URL_ATTRIBUTES = frozenset({"href", "src"})
SAFE_SCHEMES = frozenset({"http", "https"})

VOID_TAGS = frozenset({
    "area", "base", "br", "col", "embed", "hr", "img", "input", "link",
    "meta", "param", "source", "track", "wbr",
})

# Tags whose content is not readable text and is dropped with them.
DISCARD_CONTENT_TAGS = frozenset({"script", "style", "template"})

# Start tags that implicitly close an open paragraph.
BLOCK_TAGS = frozenset({
    "p", "hr", "h1", "h2", "h3", "h4", "h5", "h6", "ul", "ol", "blockquote",
    "pre", "div", "table", "section", "article", "aside", "header", "footer",
    "nav", "form", "fieldset", "figure", "address", "dl", "main", "menu",
    "center", "details",
})

# An open paragraph is not closed across these.
SCOPE_TAGS = frozenset({"li", "blockquote"})

LIST_TAGS = frozenset({"ul", "ol"})

HEADING_TAGS = frozenset({"h1", "h2", "h3", "h4", "h5", "h6"})

MAX_DEPTH = 128

MEDIA_EXTENSIONS = frozenset({
    ".mp3", ".m4a", ".aac", ".ogg", ".oga", ".opus", ".flac", ".wav",
    ".mp4", ".m4v", ".mov", ".webm", ".ogv", ".mkv",
})


@dataclass(frozen=True)
class Text:
    text: str


@dataclass(frozen=True)
class Element:
    tag: str
    attributes: Mapping[str, str] = field(default_factory=dict)
    children: tuple["Node", ...] = ()


Node = Text | Element


@dataclass(frozen=True)
class DocumentTree:
    """Root of a built document."""

    children: tuple[Node, ...] = ()

    def __iter__(self) -> Iterator[Node]:
        return walk(self)


def build(raw: bytes | str, base_url: str | None = None) -> DocumentTree:
    """Build a sanitized document tree from item markup.

    Args:
        raw: Markup bytes (decoded as UTF-8, invalid sequences replaced) or text.
        base_url: Optional URL that relative links and image sources resolve against.

    Returns:
        DocumentTree containing only allow-listed tags and attributes.
    """
    if isinstance(raw, bytes):
        text = raw.decode("utf-8", errors="replace")
    else:
        text = raw

    builder = _TreeBuilder(base_url)
    try:
        builder.feed(text)
        builder.close()
    except Exception as e:
        # Keep whatever was built before the parser gave up.
        logger.debug("Markup parser stopped early: %s", e)
    return builder.finish()


def walk(node: DocumentTree | Node) -> Iterator[Node]:
    """Yield every node below ``node`` in document order."""
    stack = list(reversed(node.children)) if not isinstance(node, Text) else []
    while stack:
        current = stack.pop()
        yield current
        if isinstance(current, Element):
            stack.extend(reversed(current.children))


def media_urls(tree: DocumentTree) -> list[str]:
    """Collect image sources and links to audio/video files, first occurrence first."""
    urls: list[str] = []
    seen: set[str] = set()
    for node in walk(tree):
        if not isinstance(node, Element):
            continue
        url = None
        if node.tag == "img":
            url = node.attributes.get("src")
        elif node.tag == "a":
            href = node.attributes.get("href")
            if href and _is_media_link(href):
                url = href
        if url and url not in seen:
            seen.add(url)
            urls.append(url)
    return urls


def media_refs(tree: DocumentTree) -> list[MediaRef]:
    return [media_ref(url) for url in media_urls(tree)]


def to_text(tree: DocumentTree) -> str:
    """Render the tree as plain text for text-only surfaces."""
    out: list[str] = []
    for child in tree.children:
        _render_text(child, out, list_index=None)
    text = "".join(out)
    lines = [line.rstrip() for line in text.splitlines()]
    # Collapse runs of blank lines left by nested blocks.
    collapsed: list[str] = []
    for line in lines:
        if not line and collapsed and not collapsed[-1]:
            continue
        collapsed.append(line)
    return "\n".join(collapsed).strip("\n")


def _render_text(node: Node, out: list[str], list_index: int | None) -> None:
    if isinstance(node, Text):
        out.append(node.text)
        return

    tag = node.tag
    if tag == "br":
        out.append("\n")
        return
    if tag == "hr":
        out.append("\n----\n")
        return
    if tag == "img":
        alt = node.attributes.get("alt")
        out.append(f"[image: {alt}]" if alt else "[image]")
        return

    if tag == "li":
        prefix = f"{list_index}. " if list_index is not None else "* "
        out.append("\n" + prefix)
    elif tag in HEADING_TAGS or tag in ("p", "pre", "blockquote", "ul", "ol"):
        out.append("\n\n")

    counter = 1
    for child in node.children:
        if tag == "ol" and isinstance(child, Element) and child.tag == "li":
            _render_text(child, out, list_index=counter)
            counter += 1
        else:
            _render_text(child, out, list_index=None)

    if tag == "a":
        href = node.attributes.get("href")
        if href:
            out.append(f" <{href}>")
    elif tag in HEADING_TAGS or tag in ("p", "pre", "blockquote", "ul", "ol"):
        out.append("\n\n")


def _is_media_link(url: str) -> bool:
    path = urlsplit(url).path.lower()
    dot = path.rfind(".")
    return dot != -1 and path[dot:] in MEDIA_EXTENSIONS


def _clean_url(value: str, base_url: str | None) -> str | None:
    value = value.strip()
    if base_url:
        try:
            value = urljoin(base_url, value)
        except ValueError:
            return None
    try:
        scheme = urlsplit(value).scheme.lower()
    except ValueError:
        return None
    return value if scheme in SAFE_SCHEMES else None


@dataclass
class _Frame:
    tag: str
    attributes: dict[str, str]
    children: list[Node] = field(default_factory=list)


class _TreeBuilder(HTMLParser):
    """HTMLParser that maintains an open-element stack of allowed tags only."""

    def __init__(self, base_url: str | None):
        super().__init__(convert_charrefs=True)
        self._base_url = base_url
        self._root = _Frame("#root", {})
        self._stack: list[_Frame] = [self._root]
        self._discard_depth = 0

    # --- HTMLParser callbacks ---

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in DISCARD_CONTENT_TAGS:
            self._discard_depth += 1
            return
        if self._discard_depth:
            return

        if tag in BLOCK_TAGS:
            self._close_paragraph()

        tag = TAG_ALIASES.get(tag, tag)
        if tag not in ALLOWED_TAGS:
            return

        if tag == "li":
            self._close_list_item()
        elif tag == "a":
            # Anchors do not nest.
            index = self._find_open("a", boundary=LIST_TAGS)
            if index is not None:
                self._close_through(index)

        attributes = self._filter_attributes(tag, attrs)
        if tag in VOID_TAGS:
            self._append(Element(tag, attributes))
        elif len(self._stack) <= MAX_DEPTH:
            self._stack.append(_Frame(tag, attributes))

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in DISCARD_CONTENT_TAGS:
            return
        self.handle_starttag(tag, attrs)
        if TAG_ALIASES.get(tag, tag) not in VOID_TAGS:
            self.handle_endtag(tag)

    def handle_endtag(self, tag: str) -> None:
        if tag in DISCARD_CONTENT_TAGS:
            if self._discard_depth:
                self._discard_depth -= 1
            return
        if self._discard_depth:
            return

        tag = TAG_ALIASES.get(tag, tag)
        if tag not in ALLOWED_TAGS or tag in VOID_TAGS:
            return
        index = self._find_open(tag)
        if index is not None:
            self._close_through(index)

    def handle_data(self, data: str) -> None:
        if self._discard_depth or not data:
            return
        top = self._stack[-1]
        if top.tag in LIST_TAGS and not data.strip():
            return
        self._append(Text(data))

    # --- Tree maintenance ---

    def finish(self) -> DocumentTree:
        self._close_through(1)
        return DocumentTree(tuple(self._root.children))

    def _append(self, node: Node) -> None:
        children = self._stack[-1].children
        if isinstance(node, Text) and children and isinstance(children[-1], Text):
            children[-1] = Text(children[-1].text + node.text)
        else:
            children.append(node)

    def _find_open(self, tag: str, boundary: frozenset[str] = frozenset()) -> int | None:
        for index in range(len(self._stack) - 1, 0, -1):
            open_tag = self._stack[index].tag
            if open_tag == tag:
                return index
            if open_tag in boundary:
                return None
        return None

    def _close_through(self, index: int) -> None:
        while len(self._stack) > max(index, 1):
            frame = self._stack.pop()
            self._append(Element(frame.tag, frame.attributes, tuple(frame.children)))

    def _close_paragraph(self) -> None:
        index = self._find_open("p", boundary=SCOPE_TAGS)
        if index is not None:
            self._close_through(index)

    def _close_list_item(self) -> None:
        index = self._find_open("li", boundary=LIST_TAGS)
        if index is not None:
            self._close_through(index)

    def _filter_attributes(
        self, tag: str, attrs: list[tuple[str, str | None]]
    ) -> dict[str, str]:
        allowed = ALLOWED_ATTRIBUTES.get(tag, ())
        kept: dict[str, str] = {}
        for name, value in attrs:
            if name not in allowed or name in kept or value is None:
                continue
            if name in URL_ATTRIBUTES:
                value = _clean_url(value, self._base_url)
                if value is None:
                    continue
            kept[name] = value
        return dict(sorted(kept.items()))
