"""
Consolidation of registered CSS/JS assets into cache-busted bundle files.

For each content type the ordered items of a rendering pass are cut into
runs of compatible items, every run is fingerprinted from its inputs, and
the bundle file named after that fingerprint is assembled, minified and
written once. Existing files are reused as they are.
"""

import hashlib
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Union

import csscompressor
import jsmin
from packaging import version

from plugins.consolidate.assets import CONTENT_TYPES, CSS, JS, AssetCollector, AssetItem
from plugins.consolidate.config import ConsolidationConfig
from plugins.consolidate.css import UrlRewriter, extract_charsets, hoist_imports
from plugins.consolidate.errors import ConfigurationError, MinificationError, PathResolutionError, WriteError
from plugins.consolidate.fingerprint import ContentFingerprinter
from plugins.consolidate.paths import PathResolver
from plugins.consolidate.writer import OutputWriter

logger = logging.getLogger(f"mkdocs.plugins.{__name__}")

# Default minifier per content type; any `minify(text) -> text` callable can replace them.
MINIFIERS: Dict[str, Callable] = {
    JS: jsmin.jsmin,
    CSS: csscompressor.compress,
}

# Compatibility: csscompressor<=0.9.5. Preserve whitespace in url() to avoid breaking SVG data URIs.
if version.parse(csscompressor.__version__) <= version.parse("0.9.5"):
    # See https://github.com/sprymix/csscompressor/issues/9#issuecomment-1024417374
    _preserve_call_tokens_original = csscompressor._preserve_call_tokens
    _url_re = csscompressor._url_re

    def _preserve_call_tokens(*args, **kwargs):
        """Keep whitespace inside url() tokens."""
        if _url_re == args[1]:
            kwargs["remove_ws"] = False
        return _preserve_call_tokens_original(*args, **kwargs)

    csscompressor._preserve_call_tokens = _preserve_call_tokens


def minify_text(text: str, minify_func: Callable, **kwargs) -> str:
    """Run `minify_func` with safe parameters; failures become `MinificationError`."""
    try:
        if getattr(minify_func, "__name__", "") == "jsmin":
            return minify_func(text, quote_chars="'\"`")
        return minify_func(text, **kwargs)
    except Exception as e:
        raise MinificationError(f"{getattr(minify_func, '__name__', minify_func)} failed: {e}") from e


@dataclass
class Bundle:
    """Contiguous run of items sharing position and options."""

    content_type: str
    position: str
    options: Dict[str, str]
    items: List[AssetItem] = field(default_factory=list)


@dataclass(frozen=True)
class BundleFile:
    path: str
    url: str
    fingerprint: str


@dataclass
class ConsolidationResult:
    """What to emit in place of `members`; `output` is None when the bundle was dropped."""

    output: Optional[AssetItem]
    members: List[AssetItem]
    bundle_file: Optional[BundleFile] = None

    @property
    def passthrough(self) -> bool:
        return self.bundle_file is None and self.output is not None


class ConsolidationEngine:
    """Concatenate, rewrite, minify and persist the assets of a page."""

    def __init__(
        self,
        config: ConsolidationConfig,
        resolver: Optional[PathResolver] = None,
        fingerprinter: Optional[ContentFingerprinter] = None,
        writer: Optional[OutputWriter] = None,
        minifiers: Optional[Dict[str, Callable]] = None,
        debug: bool = False,
    ):
        self.config = config
        self.resolver = resolver or PathResolver(config.base_path, config.web_path, config.schemas)
        self.fingerprinter = fingerprinter or ContentFingerprinter(config.file_check_algorithm)
        self.writer = writer or OutputWriter(config.file_mode)
        self.minifiers: Dict[str, Callable] = dict(MINIFIERS)
        self.minifiers.update(minifiers or {})
        self.rewriter = UrlRewriter(self.resolver, config.expand_imports, config.remove_comments)
        self.debug = debug
        try:
            self._exclude_files = [re.compile(p) for p in config.exclude_files]
        except re.error as e:
            raise ConfigurationError(f"Invalid exclude_files pattern: {e}") from e

    def _dbg(self, msg: str, *args) -> None:
        if self.debug:
            logger.debug("[consolidate] " + msg, *args)

    # -------------------------------
    # Partitioning
    # -------------------------------

    def is_eligible(self, content_type: str, item: AssetItem) -> bool:
        """False for items that must be emitted as given."""
        if not item.minify:
            return False
        if "condition" in item.options:
            # IE conditional comments cannot be merged.
            return False
        if not item.is_inline:
            if not item.source_path:
                return False
            if any(p.search(item.source_url or "") for p in self._exclude_files):
                return False
        if content_type == JS and item.position not in self.config.js_position:
            return False
        return True

    def partition(self, content_type: str, items: Sequence[AssetItem]) -> List[Union[Bundle, AssetItem]]:
        """Cut `items` into bundles, keeping ineligible items in place."""
        concat = self.config.concat_css if content_type == CSS else self.config.concat_js
        runs: List[Union[Bundle, AssetItem]] = []
        current: Optional[Bundle] = None

        for item in items:
            if not self.is_eligible(content_type, item):
                runs.append(item)
                current = None
                continue
            if (
                current is None
                or not concat
                or current.position != item.position
                or current.options != item.options
            ):
                current = Bundle(content_type, item.position, dict(item.options))
                runs.append(current)
            current.items.append(item)

        return runs

    # -------------------------------
    # Fingerprints
    # -------------------------------

    def _identify(self, item: AssetItem) -> str:
        if item.is_inline:
            return "inline:" + hashlib.sha1((item.content or "").encode("utf8")).hexdigest()
        return f"file:{item.source_url}:{self.fingerprinter.fingerprint(item.source_path)}"

    def _settings_signature(self, content_type: str) -> str:
        c = self.config
        if content_type == CSS:
            return (
                f"minify={c.minify_css};linebreak={c.css_linebreak_pos};charset={c.force_charset};"
                f"imports={c.expand_imports};comments={c.remove_comments}"
            )
        return f"minify={c.minify_js}"

    def _combine(self, content_type: str, identities: Sequence[str]) -> str:
        digest = hashlib.sha1()
        digest.update(f"{content_type}\n{len(identities)}\n{self._settings_signature(content_type)}\n".encode("utf8"))
        for identity in identities:
            digest.update(identity.encode("utf8"))
            digest.update(b"\n")
        return digest.hexdigest()

    def bundle_fingerprint(self, content_type: str, members: Sequence[AssetItem]) -> str:
        """Identity of a bundle's inputs, in order.

        Raises `PathResolutionError` if a file member cannot be fingerprinted.
        """
        return self._combine(content_type, [self._identify(item) for item in members])

    # -------------------------------
    # Assembly
    # -------------------------------

    @staticmethod
    def _read(path: str) -> str:
        try:
            # utf-8-sig drops byte order marks that would break the merged file.
            with open(path, encoding="utf-8-sig") as f:
                return f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise PathResolutionError(f"Asset file not readable `{path}`: {e}") from e

    def _minify(self, content_type: str, text: str) -> str:
        enabled = self.config.minify_css if content_type == CSS else self.config.minify_js
        if not enabled:
            return text

        minify_func = self.minifiers[content_type]
        kwargs = {}
        if minify_func is csscompressor.compress and self.config.css_linebreak_pos > 0:
            kwargs["max_linelen"] = self.config.css_linebreak_pos
        try:
            return minify_text(text, minify_func, **kwargs)
        except MinificationError as e:
            logger.warning("Writing unminified %s bundle: %s", content_type, e)
            return text

    def _finish_css(self, css: str) -> str:
        charsets, css = extract_charsets(css)
        imports, css = hoist_imports(css)
        charset = self.config.force_charset or (charsets[0] if charsets else None)

        header = ""
        if charset:
            header += f'@charset "{charset}";\n'
        for statement in imports:
            header += statement + "\n"
        return header + self._minify(CSS, css)

    def assemble(self, content_type: str, members: Sequence[AssetItem]) -> str:
        """Bundle text for `members`; unreadable files are skipped with a warning."""
        parts: List[str] = []
        for item in members:
            if item.is_inline:
                parts.append(item.content or "")
                continue
            try:
                text = self._read(item.source_path)
            except PathResolutionError as e:
                logger.warning("Skipping asset: %s", e)
                continue
            if content_type == CSS:
                text = self.rewriter.rewrite(
                    text, os.path.dirname(item.source_path), self.config.minify_path, source_path=item.source_path
                )
            parts.append(text)

        if content_type == CSS:
            return self._finish_css("".join(parts))
        return self._minify(JS, "\n;\n".join(parts))

    # -------------------------------
    # Bundles
    # -------------------------------

    def process(self, bundle: Bundle) -> ConsolidationResult:
        """Materialize `bundle` (or reuse its file) and return what to emit."""
        content_type = bundle.content_type
        members: List[AssetItem] = []
        identities: List[str] = []
        for item in bundle.items:
            try:
                identities.append(self._identify(item))
            except PathResolutionError as e:
                logger.warning("Skipping asset: %s", e)
                continue
            members.append(item)

        if not members:
            logger.warning("No readable %s assets left in bundle, dropping it", content_type)
            return ConsolidationResult(None, bundle.items)

        fingerprint = self._combine(content_type, identities)
        path = os.path.join(self.config.minify_path, f"{fingerprint}.{content_type}")

        if os.path.exists(path):
            self._dbg("cache hit %s (%d members)", os.path.basename(path), len(members))
        else:
            text = self.assemble(content_type, members)
            try:
                created = self.writer.write(path, text)
            except WriteError as e:
                logger.warning("Dropping %s bundle: %s", content_type, e)
                return ConsolidationResult(None, bundle.items)
            self._dbg("%s %s (%d members)", "wrote" if created else "reused", os.path.basename(path), len(members))

        bundle_file = BundleFile(path, self.resolver.public_url(path), fingerprint)
        output = AssetItem.file(bundle_file.url, path, bundle.position, bundle.options, minify=False)
        return ConsolidationResult(output, list(bundle.items), bundle_file)

    def consolidate_groups(self, content_type: str, items: Sequence[AssetItem]) -> List[ConsolidationResult]:
        if not self.config.enable_minify:
            return [ConsolidationResult(item, [item]) for item in items]

        results: List[ConsolidationResult] = []
        for run in self.partition(content_type, items):
            if isinstance(run, Bundle):
                results.append(self.process(run))
            else:
                results.append(ConsolidationResult(run, [run]))
        return results

    def consolidate(self, content_type: str, items: Sequence[AssetItem]) -> List[AssetItem]:
        """Items to register with the page in place of `items`, in order."""
        return [r.output for r in self.consolidate_groups(content_type, items) if r.output is not None]

    def end_body(self, collector: AssetCollector) -> Dict[str, List[AssetItem]]:
        """Run the end-of-body step of a rendering pass.

        Bundles not listed in `exclude_bundles` are registered and consolidated
        with the page's own items; excluded bundles are appended afterwards,
        unconsolidated, in their registration order.
        """
        excluded = set(self.config.exclude_bundles)
        for bundle in collector.bundles:
            if bundle.name not in excluded:
                collector.register_bundle_files(bundle)

        outputs = {t: self.consolidate(t, collector.items(t)) for t in CONTENT_TYPES}

        for bundle in collector.bundles:
            if bundle.name in excluded:
                added = collector.register_bundle_files(bundle)
                for content_type in CONTENT_TYPES:
                    outputs[content_type].extend(added[content_type])
        return outputs
