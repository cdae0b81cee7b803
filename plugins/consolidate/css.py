"""
CSS relocation helpers: `url()` rewriting, `@import` expansion, charset and
import hoisting for merged bundles.
"""

import logging
import os
import re
from typing import List, Optional, Tuple

from plugins.consolidate.errors import ImportResolutionError, PathResolutionError
from plugins.consolidate.paths import PathResolver, split_reference

logger = logging.getLogger(f"mkdocs.plugins.{__name__}")

URL_RE = re.compile(
    r"""url\(\s*(?P<quote>['"]?)(?P<ref>.*?)(?P=quote)\s*\)""",
    re.IGNORECASE | re.DOTALL,
)

IMPORT_RE = re.compile(
    r"""@import\s+
        (?:url\(\s*(?P<uq>['"]?)(?P<url>.*?)(?P=uq)\s*\)
          |(?P<sq>['"])(?P<str>.*?)(?P=sq))
        \s*(?P<media>[^;{}]*?)\s*;""",
    re.IGNORECASE | re.VERBOSE | re.DOTALL,
)

CHARSET_RE = re.compile(r"""@charset\s+(?P<q>['"])(?P<value>[^'"]*)(?P=q)\s*;[ \t]*\n?""", re.IGNORECASE)

# `/*! ... */` comments carry licenses and are kept.
COMMENT_RE = re.compile(r"/\*(?!!).*?\*/", re.DOTALL)


def strip_comments(css_text: str) -> str:
    return COMMENT_RE.sub("", css_text)


def extract_charsets(css_text: str) -> Tuple[List[str], str]:
    """Return every declared charset (in order) and the text without them."""
    charsets = [m.group("value") for m in CHARSET_RE.finditer(css_text)]
    return charsets, CHARSET_RE.sub("", css_text)


def hoist_imports(css_text: str) -> Tuple[List[str], str]:
    """Remove the `@import` statements left in `css_text` and return them.

    In a merged bundle they must precede every other rule to stay valid.
    """
    imports = [m.group(0).strip() for m in IMPORT_RE.finditer(css_text)]
    return imports, IMPORT_RE.sub("", css_text)


def scope_import(m: re.Match, media: str) -> str:
    """Rebuild the `@import` matched by `m` so it only applies under `media`.

    A media feature (`(min-width: 40em)`) is combined with a single outer
    query; any other inner query is kept as it is.
    """
    whole = m.group(0)
    inner = m.group("media").strip()
    if inner and not (inner.startswith("(") and "," not in media):
        logger.warning("Keeping media `%s` of nested import, outer media `%s` not applied", inner, media)
        return whole
    scoped = f"{media} and {inner}" if inner else media
    prefix = whole[:m.start("media") - m.start()].rstrip()
    return f"{prefix} {scoped};"


class UrlRewriter:
    """Rewrite the local references of a CSS file for a new directory.

    With `expand_imports`, local `@import` targets are spliced in place
    (recursively rewritten for the same target directory).
    """

    def __init__(self, resolver: PathResolver, expand_imports: bool = False, remove_comments: bool = False):
        self.resolver = resolver
        self.expand_imports = expand_imports
        self.remove_comments = remove_comments

    def rewrite(self, css_text: str, source_dir: str, target_dir: str, source_path: Optional[str] = None) -> str:
        """Return `css_text` (read from `source_dir`) relocated to `target_dir`.

        `source_path`, when known, seeds import cycle detection.
        """
        stack = (os.path.normpath(os.path.abspath(source_path)),) if source_path else ()
        return self._rewrite(css_text, source_dir, target_dir, stack)

    def _rewrite(self, css_text: str, source_dir: str, target_dir: str, stack: Tuple[str, ...]) -> str:
        if self.remove_comments:
            css_text = strip_comments(css_text)

        out: List[str] = []
        last = 0
        for m in IMPORT_RE.finditer(css_text):
            out.append(self._rewrite_urls(css_text[last:m.start()], source_dir, target_dir))
            last = m.end()

            if self.expand_imports:
                try:
                    expanded = self._expand_import(m, source_dir, target_dir, stack)
                except ImportResolutionError as e:
                    logger.warning("Keeping @import statement: %s", e)
                    expanded = None
                if expanded is not None:
                    out.append(expanded)
                    continue

            out.append(self._keep_import(m, source_dir, target_dir))

        out.append(self._rewrite_urls(css_text[last:], source_dir, target_dir))
        return "".join(out)

    def rewrite_reference(self, reference: str, source_dir: str, target_dir: str) -> str:
        """Re-express a local reference relative to `target_dir`.

        External, root-relative and fragment-only references are returned
        unchanged, as are references that cannot be resolved.
        """
        ref = reference.strip()
        if not ref or ref.startswith(("#", "/")) or self.resolver.is_external(ref):
            return reference
        try:
            resolved = self.resolver.resolve(ref, source_dir)
        except PathResolutionError as e:
            logger.warning("Leaving CSS reference `%s` as is: %s", ref, e)
            return reference
        _, suffix = split_reference(ref)
        rel = os.path.relpath(resolved.absolute_path, target_dir).replace(os.sep, "/")
        return rel + suffix

    def _rewrite_urls(self, css_text: str, source_dir: str, target_dir: str) -> str:
        def _sub(m: re.Match) -> str:
            new_ref = self.rewrite_reference(m.group("ref"), source_dir, target_dir)
            start = m.start("ref") - m.start()
            end = m.end("ref") - m.start()
            whole = m.group(0)
            return whole[:start] + new_ref + whole[end:]

        return URL_RE.sub(_sub, css_text)

    def _keep_import(self, m: re.Match, source_dir: str, target_dir: str) -> str:
        group = "url" if m.group("url") is not None else "str"
        new_ref = self.rewrite_reference(m.group(group), source_dir, target_dir)
        start = m.start(group) - m.start()
        end = m.end(group) - m.start()
        whole = m.group(0)
        return whole[:start] + new_ref + whole[end:]

    def _expand_import(self, m: re.Match, source_dir: str, target_dir: str, stack: Tuple[str, ...]) -> Optional[str]:
        """Return the rewritten content of a local import, or None for external ones."""
        ref = (m.group("url") if m.group("url") is not None else m.group("str")).strip()
        if self.resolver.is_external(ref):
            return None

        try:
            resolved = self.resolver.resolve(ref, source_dir, must_exist=True)
        except PathResolutionError as e:
            raise ImportResolutionError(f"cannot resolve `{ref}`: {e}") from e

        path = resolved.absolute_path
        if path in stack:
            raise ImportResolutionError(f"cyclic import of `{path}`")

        try:
            with open(path, encoding="utf8") as f:
                imported = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise ImportResolutionError(f"cannot read `{path}`: {e}") from e

        content = self._rewrite(imported, os.path.dirname(path), target_dir, stack + (path,))
        media = m.group("media").strip()
        if media:
            # Remaining imports are hoisted out of the block later and carry the query themselves.
            content = IMPORT_RE.sub(lambda i: scope_import(i, media), content)
            return f"@media {media}{{\n{content}\n}}"
        return content
