"""
An MkDocs plugin to merge the CSS and JS of each page into minified, cache-busted bundles
"""

import logging
import os
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlsplit

import htmlmin
from bs4 import BeautifulSoup, Comment, Tag
from mkdocs.config import config_options as c
from mkdocs.config.defaults import MkDocsConfig
from mkdocs.exceptions import PluginError
from mkdocs.plugins import BasePlugin
from mkdocs.structure.pages import Page

from plugins.consolidate.assets import CONTENT_TYPES, CSS, JS, POS_END, POS_HEAD, AssetCollector, AssetItem
from plugins.consolidate.config import ConsolidationConfig
from plugins.consolidate.engine import ConsolidationEngine
from plugins.consolidate.errors import ConfigurationError
from plugins.consolidate.paths import DEFAULT_SCHEMAS

# Use MkDocs' recommended plugin logger namespace so debug logs appear only with `--verbose`.
logger = logging.getLogger(f"mkdocs.plugins.{__name__}")

# `type` values of classic scripts; modules, JSON and templates are left alone.
JS_TYPES = ("", "text/javascript", "application/javascript")


def _attr_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return " ".join(value)
    return str(value)


def _tag_text(tag: Tag) -> str:
    return "".join(str(child) for child in tag.contents)


def _adjacent(previous: Tag, tag: Tag) -> bool:
    """True if only whitespace and comments separate `previous` from `tag`."""
    for node in tag.previous_elements:
        if node is previous:
            return True
        if isinstance(node, Tag):
            return False
        if node.parent is previous:
            continue
        if isinstance(node, Comment) or not str(node).strip():
            continue
        return False
    return False


def _runs(items: Sequence[AssetItem], segments: Dict[int, int]) -> Iterator[List[AssetItem]]:
    """Split `items` wherever their segment changes."""
    run: List[AssetItem] = []
    current = None
    for item in items:
        segment = segments.get(id(item), 0)
        if run and segment != current:
            yield run
            run = []
        current = segment
        run.append(item)
    if run:
        yield run


class ConsolidatePlugin(BasePlugin):
    """MkDocs plugin that replaces the stylesheets and scripts of every page with bundles.

    Configuration options (all optional):
    - enable_minify (bool): Master switch for consolidation.
    - file_check_algorithm (str): `content-hash` (sha1 of the bytes) or `mtime`.
    - concat_css / concat_js (bool): Merge consecutive assets; otherwise each asset is its own bundle.
    - minify_css / minify_js (bool): Minify bundle content.
    - web_path (str): Public URL of the site root (defaults to the path of `site_url`).
    - base_path (str): Filesystem web root (defaults to `site_dir`).
    - minify_path (str): Output directory, relative to `base_path`.
    - js_position (list): Script positions (`head`, `end`) eligible for bundling.
    - force_charset (str|false): Single `@charset` for every CSS bundle.
    - expand_imports (bool): Inline local `@import` targets.
    - css_linebreak_pos (int): Wrap minified CSS lines after this many characters (0 disables).
    - file_mode (int|str|false): Permission bits of written bundles.
    - schemas (list): URL prefixes left untouched.
    - exclude_files (list): Regular expressions of asset URLs never bundled.
    - css_exclude_media (list): Stylesheet media queries never bundled.
    - remove_comments (bool): Strip CSS comments (except `/*! ... */`).
    - minify_html (bool) / htmlmin_opts (dict): Compress the final HTML with `htmlmin`.
    """

    config_scheme = (
        ('enable_minify',        c.Type(bool, default=True)),
        ('file_check_algorithm', c.Choice(("content-hash", "sha1", "mtime", "filemtime"), default="content-hash")),
        ('concat_css',           c.Type(bool, default=True)),
        ('minify_css',           c.Type(bool, default=True)),
        ('concat_js',            c.Type(bool, default=True)),
        ('minify_js',            c.Type(bool, default=True)),
        ('web_path',             c.Type(str, default="")),
        ('base_path',            c.Type(str, default="")),
        ('minify_path',          c.Type(str, default="minify")),
        ('js_position',          c.Type(list, default=[POS_END, POS_HEAD])),
        ('force_charset',        c.Type((str, bool), default=False)),
        ('expand_imports',       c.Type(bool, default=True)),
        ('css_linebreak_pos',    c.Type(int, default=2048)),
        ('file_mode',            c.Type((int, str, bool), default=0o664)),
        ('schemas',              c.Type(list, default=list(DEFAULT_SCHEMAS))),
        ('exclude_bundles',      c.Type(list, default=[])),
        ('exclude_files',        c.Type(list, default=[])),
        ('css_exclude_media',    c.Type(list, default=[])),
        ('remove_comments',      c.Type(bool, default=True)),
        ('minify_html',          c.Type(bool, default=False)),
        ('htmlmin_opts',         c.Type(dict, default={})),
        ('debug',                c.Type(bool, default=False)),
    )

    def __init__(self):
        super().__init__()
        self.settings: Optional[ConsolidationConfig] = None
        self.engine: Optional[ConsolidationEngine] = None

    # -------------------------------
    # Helpers
    # -------------------------------

    def _debug_enabled(self) -> bool:
        return bool(self.config.get("debug", False))

    def _dbg(self, msg: str, *args) -> None:
        """Debug log gated by plugin config.

        MkDocs only shows DEBUG when run with `-v/--verbose`.
        """
        if not self._debug_enabled():
            return

        logger.debug("[consolidate] " + msg, *args)

    @staticmethod
    def _site_web_path(site_url: Optional[str]) -> str:
        path = urlsplit(site_url or "").path or "/"
        return path if path.endswith("/") else path + "/"

    def build_settings(self, config: MkDocsConfig) -> ConsolidationConfig:
        """Map plugin options onto a prepared `ConsolidationConfig`."""
        base_path = self.config.get("base_path") or config["site_dir"]
        return ConsolidationConfig(
            base_path=base_path,
            web_path=self.config.get("web_path") or self._site_web_path(config.get("site_url")),
            minify_path=self.config.get("minify_path") or "",
            enable_minify=self.config.get("enable_minify", True),
            file_check_algorithm=self.config.get("file_check_algorithm", "content-hash"),
            concat_css=self.config.get("concat_css", True),
            minify_css=self.config.get("minify_css", True),
            concat_js=self.config.get("concat_js", True),
            minify_js=self.config.get("minify_js", True),
            js_position=list(self.config.get("js_position") or []),
            force_charset=self.config.get("force_charset", False),
            expand_imports=self.config.get("expand_imports", True),
            css_linebreak_pos=self.config.get("css_linebreak_pos", 2048),
            file_mode=self.config.get("file_mode", 0o664),
            schemas=list(self.config.get("schemas") or DEFAULT_SCHEMAS),
            exclude_bundles=list(self.config.get("exclude_bundles") or []),
            remove_comments=self.config.get("remove_comments", True),
            exclude_files=list(self.config.get("exclude_files") or []),
            css_exclude_media=list(self.config.get("css_exclude_media") or []),
            minify_output=self.config.get("minify_html", False),
            htmlmin_opts=dict(self.config.get("htmlmin_opts") or {}),
        ).prepare()

    def _minify_html_page(self, output: str) -> Optional[str]:
        """Minify HTML using plugin config and merged options."""
        output_opts: Dict[str, Union[bool, str, Tuple[str, ...]]] = {
            "remove_comments": False,
            "remove_empty_space": False,
            "remove_all_empty_space": False,
            "reduce_empty_attributes": True,
            "reduce_boolean_attributes": False,
            "remove_optional_attribute_quotes": False,
            "convert_charrefs": True,
            "keep_pre": False,
            "pre_tags": ("pre", "textarea"),
            "pre_attr": "pre",
        }

        selected_opts: Dict = self.config.get("htmlmin_opts", {}) or {}
        for key in selected_opts:
            if key in output_opts:
                output_opts[key] = selected_opts[key]
            else:
                logger.warning("htmlmin option '%s' not recognized", key)

        return htmlmin.minify(output, **output_opts)

    # -------------------------------
    # Page assets
    # -------------------------------

    def _register_tag(self, tag: Tag, page_dir: str, collector: AssetCollector) -> Optional[Tuple[str, Optional[AssetItem]]]:
        """Register a `<link>`, `<style>` or `<script>` tag.

        Returns the content type and the stored item (None for duplicates),
        or None when the tag is not an asset we handle.
        """
        position = POS_HEAD if tag.find_parent("head") is not None else POS_END
        attrs = {k: _attr_value(v) for k, v in tag.attrs.items()}

        if tag.name == "link":
            rel = attrs.pop("rel", "").lower().split()
            href = attrs.pop("href", "")
            if "stylesheet" not in rel or not href:
                return None
            attrs.pop("type", None)
            # Subresource integrity would not match a bundle.
            minify = "integrity" not in attrs
            return CSS, collector.register_css_file(href, attrs, base_dir=page_dir, minify=minify, position=position)

        if tag.name == "style":
            attrs.pop("type", None)
            # Relative references in the block point from the page, not from the bundle.
            text = self.engine.rewriter.rewrite(_tag_text(tag), page_dir, self.settings.minify_path)
            return CSS, collector.register(CSS, AssetItem.inline(text, position, attrs))

        if tag.name == "script":
            if attrs.pop("type", "").strip().lower() not in JS_TYPES:
                return None
            src = attrs.pop("src", "")
            if src:
                minify = "integrity" not in attrs
                return JS, collector.register_js_file(src, position, attrs, base_dir=page_dir, minify=minify)
            text = _tag_text(tag)
            if not text.strip():
                return None
            return JS, collector.register(JS, AssetItem.inline(text, position, attrs))

        return None

    @staticmethod
    def _bundle_tag(soup: BeautifulSoup, content_type: str, item: AssetItem) -> Tag:
        if content_type == CSS:
            return soup.new_tag("link", attrs={"rel": "stylesheet", "href": item.source_url, **item.options})
        return soup.new_tag("script", attrs={"src": item.source_url, **item.options})

    def consolidate_page(self, output: str, page_dir: str) -> str:
        """Collect the assets of a rendered page, consolidate them and rewrite the tags."""
        soup = BeautifulSoup(output, "html.parser")
        collector = AssetCollector(self.engine.resolver, self.settings.css_exclude_media)
        tags: Dict[str, Dict[int, Tag]] = {t: {} for t in CONTENT_TYPES}
        # Scripts only merge with neighbours: moving one past other markup changes what it sees.
        segments: Dict[str, Dict[int, int]] = {t: {} for t in CONTENT_TYPES}
        previous_script: Optional[Tag] = None
        segment = 0
        changed = False

        for tag in soup.find_all(["link", "style", "script"]):
            found = self._register_tag(tag, page_dir, collector)
            if found is None:
                continue
            content_type, item = found
            if item is None:
                self._dbg("dropping duplicate %s tag", content_type)
                tag.decompose()
                changed = True
                continue
            tags[content_type][id(item)] = tag
            if content_type == JS:
                if previous_script is None or not _adjacent(previous_script, tag):
                    segment += 1
                segments[JS][id(item)] = segment
                previous_script = tag

        for content_type in CONTENT_TYPES:
            results = []
            for run in _runs(collector.items(content_type), segments[content_type]):
                results.extend(self.engine.consolidate_groups(content_type, run))
            for result in results:
                if result.passthrough:
                    continue
                member_tags = [tags[content_type][id(m)] for m in result.members if id(m) in tags[content_type]]
                if not member_tags:
                    continue
                if result.output is not None:
                    member_tags[0].replace_with(self._bundle_tag(soup, content_type, result.output))
                    member_tags = member_tags[1:]
                    self._dbg("%s bundle %s replaces %d tags", content_type, result.output.source_url, len(result.members))
                for tag in member_tags:
                    tag.decompose()
                changed = True

        return str(soup) if changed else output

    # -------------------------------
    # MkDocs hooks
    # -------------------------------

    def on_config(self, config: MkDocsConfig) -> MkDocsConfig:
        """Resolve paths and make sure the bundle directory is usable."""
        try:
            self.settings = self.build_settings(config)
        except ConfigurationError as e:
            raise PluginError(f"[consolidate] {e}") from e
        self.engine = ConsolidationEngine(self.settings, debug=self._debug_enabled())
        self._dbg(
            "[config] base_path=%s web_path=%s minify_path=%s",
            self.settings.base_path,
            self.settings.web_path,
            self.settings.minify_path,
        )
        return config

    def on_post_page(self, output: str, *, page: Page, config: MkDocsConfig) -> Optional[str]:
        """Consolidate page assets, then optionally minify the HTML."""
        if self.engine is None:
            self.on_config(config)

        if self.settings.enable_minify:
            dest_path = getattr(getattr(page, "file", None), "dest_path", "") or ""
            page_dir = os.path.join(self.settings.base_path, os.path.dirname(dest_path))
            self._dbg("[post_page] page=%s dir=%s", getattr(page, "url", ""), page_dir)
            output = self.consolidate_page(output, page_dir)

        if self.settings.minify_output:
            output = self._minify_html_page(output)
            self._dbg("[post_page] minified HTML")
        return output
