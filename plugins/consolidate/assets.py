"""
Asset items registered while a page renders, and the collector gathering them.

Usage with the capture helpers (the wrapping tags keep editors highlighting
the code and are stripped on close):

    collector = AssetCollector(resolver)
    with collector.capture_js(position=POS_HEAD, key="menu") as buf:
        buf.write("<script>initMenu();</script>")

    collector.begin_css({"media": "screen"})
    ...write markup into the returned buffer...
    collector.end_css()
"""

import hashlib
import io
import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Dict, Iterator, List, Optional, Sequence

from plugins.consolidate.errors import PathResolutionError
from plugins.consolidate.paths import PathResolver

logger = logging.getLogger(f"mkdocs.plugins.{__name__}")

CSS = "css"
JS = "js"
CONTENT_TYPES = (CSS, JS)

INLINE = "inline"
FILE = "file"

POS_HEAD = "head"
POS_BEGIN = "begin"
POS_END = "end"
POS_READY = "ready"
POS_LOAD = "load"
# Page order of the placement hints; JS output is grouped in this order.
POSITIONS = (POS_HEAD, POS_BEGIN, POS_END, POS_READY, POS_LOAD)

CAPTURE_TAGS: Dict[str, str] = {
    CSS: "style",
    JS: "script",
}


@dataclass(frozen=True)
class AssetItem:
    """One registered piece of CSS or JS: an inline block or a file reference.

    File items without `source_path` are external (or unresolvable) and are
    always emitted as given, like items with `minify=False`.
    """

    kind: str
    content: Optional[str] = None
    source_path: Optional[str] = None
    source_url: Optional[str] = None
    position: str = POS_HEAD
    options: Dict[str, str] = field(default_factory=dict)
    key: Optional[str] = None
    minify: bool = True

    @classmethod
    def inline(cls, content: str, position: str = POS_HEAD, options: Optional[Dict[str, str]] = None,
               key: Optional[str] = None) -> "AssetItem":
        return cls(INLINE, content=content, position=position, options=dict(options or {}), key=key)

    @classmethod
    def file(cls, source_url: str, source_path: Optional[str] = None, position: str = POS_HEAD,
             options: Optional[Dict[str, str]] = None, key: Optional[str] = None, minify: bool = True) -> "AssetItem":
        return cls(FILE, source_path=source_path, source_url=source_url, position=position,
                   options=dict(options or {}), key=key, minify=minify)

    @property
    def is_inline(self) -> bool:
        return self.kind == INLINE

    def dedup_key(self) -> str:
        """Explicit key, else a key derived from the content or the file URL."""
        if self.key:
            return self.key
        if self.is_inline:
            return "inline:" + hashlib.sha1((self.content or "").encode("utf8")).hexdigest()
        return "file:" + (self.source_url or self.source_path or "")


@dataclass
class AssetBundle:
    """A named group of file references provided by the host (e.g. a theme)."""

    name: str
    css: List[str] = field(default_factory=list)
    js: List[str] = field(default_factory=list)
    css_options: Dict[str, str] = field(default_factory=dict)
    js_options: Dict[str, str] = field(default_factory=dict)
    js_position: str = POS_END
    base_dir: Optional[str] = None


class Capture:
    """Buffer filled between `begin_*` and `end_*`."""

    def __init__(self, content_type: str, position: str, options: Dict[str, str], key: Optional[str]):
        self.content_type = content_type
        self.position = position
        self.options = options
        self.key = key
        self._buffer = io.StringIO()

    def write(self, text: str) -> int:
        return self._buffer.write(text)

    def getvalue(self) -> str:
        return self._buffer.getvalue()


def strip_tag(markup: str, tag: str) -> str:
    """Return the inner text of the first `<tag ...>` ... last `</tag>` pair.

    Lenient: a missing opening or closing tag just leaves that side as is,
    attributes on the opening tag are ignored.
    """
    start = 0
    opening = re.search(rf"<{tag}\b[^>]*>", markup, re.IGNORECASE)
    if opening:
        start = opening.end()

    end = len(markup)
    for closing in re.finditer(rf"</{tag}\s*>", markup, re.IGNORECASE):
        if closing.start() >= start:
            end = closing.start()

    return markup[start:end].strip()


class AssetCollector:
    """Ordered, de-duplicated registry of the assets of one rendering pass.

    The first registration of a key wins; later ones are ignored.
    """

    def __init__(self, resolver: PathResolver, exclude_media: Sequence[str] = ()):
        self.resolver = resolver
        self.exclude_media = {m.strip().lower() for m in exclude_media}
        self._items: Dict[str, List[AssetItem]] = {t: [] for t in CONTENT_TYPES}
        self._keys: Dict[str, set] = {t: set() for t in CONTENT_TYPES}
        self._captures: List[Capture] = []
        self.bundles: List[AssetBundle] = []

    # -------------------------------
    # Registration
    # -------------------------------

    def register(self, content_type: str, item: AssetItem) -> Optional[AssetItem]:
        """Add `item`; return the stored item, or None if its key was already registered."""
        key = item.dedup_key()
        if key in self._keys[content_type]:
            logger.debug("[collector] skip duplicate %s asset %s", content_type, key)
            return None

        if content_type == CSS and item.minify:
            media = (item.options.get("media") or "").strip().lower()
            if media and media in self.exclude_media:
                item = replace(item, minify=False)

        self._keys[content_type].add(key)
        self._items[content_type].append(item)
        return item

    def register_css(self, content: str, options: Optional[Dict[str, str]] = None, key: Optional[str] = None) -> Optional[AssetItem]:
        return self.register(CSS, AssetItem.inline(content, POS_HEAD, options, key))

    def register_css_file(self, reference: str, options: Optional[Dict[str, str]] = None, key: Optional[str] = None,
                          base_dir: Optional[str] = None, minify: bool = True,
                          position: str = POS_HEAD) -> Optional[AssetItem]:
        item = self._file_item(reference, position, options, key, base_dir, minify)
        return self.register(CSS, item)

    def register_js(self, content: str, position: str = POS_READY, key: Optional[str] = None) -> Optional[AssetItem]:
        return self.register(JS, AssetItem.inline(content, position, None, key))

    def register_js_file(self, reference: str, position: str = POS_END, options: Optional[Dict[str, str]] = None,
                         key: Optional[str] = None, base_dir: Optional[str] = None,
                         minify: bool = True) -> Optional[AssetItem]:
        item = self._file_item(reference, position, options, key, base_dir, minify)
        return self.register(JS, item)

    def register_bundle(self, bundle: AssetBundle) -> None:
        """Remember a bundle; its files are registered at the end of the body."""
        self.bundles.append(bundle)

    def register_bundle_files(self, bundle: AssetBundle) -> Dict[str, List[AssetItem]]:
        """Register the files of `bundle` and return the newly added items."""
        added: Dict[str, List[AssetItem]] = {t: [] for t in CONTENT_TYPES}
        for reference in bundle.css:
            item = self._file_item(reference, POS_HEAD, bundle.css_options, None, bundle.base_dir, True)
            registered = self.register(CSS, item)
            if registered:
                added[CSS].append(registered)
        for reference in bundle.js:
            item = self._file_item(reference, bundle.js_position, bundle.js_options, None, bundle.base_dir, True)
            registered = self.register(JS, item)
            if registered:
                added[JS].append(registered)
        return added

    def _file_item(self, reference: str, position: str, options: Optional[Dict[str, str]], key: Optional[str],
                   base_dir: Optional[str], minify: bool) -> AssetItem:
        try:
            resolved = self.resolver.resolve(reference, base_dir)
        except PathResolutionError as e:
            logger.warning("Registering asset `%s` without consolidation: %s", reference, e)
            return AssetItem.file(reference, None, position, options, key, minify=False)
        return AssetItem.file(resolved.public_url, resolved.absolute_path, position, options, key, minify)

    def items(self, content_type: str) -> List[AssetItem]:
        """Registered items; JS is grouped by position, order kept within a position."""
        items = list(self._items[content_type])
        if content_type == JS:
            rank = {p: i for i, p in enumerate(POSITIONS)}
            items.sort(key=lambda item: rank.get(item.position, len(POSITIONS)))
        return items

    # -------------------------------
    # Scoped capture
    # -------------------------------

    def begin_css(self, options: Optional[Dict[str, str]] = None, key: Optional[str] = None) -> Capture:
        capture = Capture(CSS, POS_HEAD, dict(options or {}), key)
        self._captures.append(capture)
        return capture

    def end_css(self) -> str:
        return self._end_capture(CSS)

    def begin_js(self, position: str = POS_READY, key: Optional[str] = None) -> Capture:
        capture = Capture(JS, position, {}, key)
        self._captures.append(capture)
        return capture

    def end_js(self) -> str:
        return self._end_capture(JS)

    def _end_capture(self, content_type: str) -> str:
        if not self._captures or self._captures[-1].content_type != content_type:
            raise RuntimeError(f"end_{content_type}() called without a matching begin_{content_type}()")
        capture = self._captures.pop()
        text = strip_tag(capture.getvalue(), CAPTURE_TAGS[content_type])
        self.register(content_type, AssetItem.inline(text, capture.position, capture.options, capture.key))
        return text

    @contextmanager
    def capture_css(self, options: Optional[Dict[str, str]] = None, key: Optional[str] = None) -> Iterator[Capture]:
        capture = self.begin_css(options, key)
        try:
            yield capture
        except BaseException:
            self._captures.remove(capture)
            raise
        self.end_css()

    @contextmanager
    def capture_js(self, position: str = POS_READY, key: Optional[str] = None) -> Iterator[Capture]:
        capture = self.begin_js(position, key)
        try:
            yield capture
        except BaseException:
            self._captures.remove(capture)
            raise
        self.end_js()
