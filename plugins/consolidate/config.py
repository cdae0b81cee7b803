"""
Resolved configuration of the consolidation engine.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from plugins.consolidate.errors import ConfigurationError
from plugins.consolidate.fingerprint import CONTENT_HASH, normalize_algorithm
from plugins.consolidate.paths import DEFAULT_SCHEMAS


def parse_file_mode(value: Union[int, str, bool, None]) -> Optional[int]:
    """Accept an int, an octal string (`"0664"`) or False/None (no chmod)."""
    if value is None or value is False:
        return None
    if value is True:
        raise ConfigurationError("file_mode must be a permission mask or false")
    if isinstance(value, str):
        try:
            return int(value, 8)
        except ValueError as e:
            raise ConfigurationError(f"Invalid file_mode `{value}`") from e
    return int(value)


@dataclass
class ConsolidationConfig:
    base_path: str
    web_path: str = "/"
    minify_path: str = ""
    enable_minify: bool = True
    file_check_algorithm: str = CONTENT_HASH
    concat_css: bool = True
    minify_css: bool = True
    concat_js: bool = True
    minify_js: bool = True
    js_position: List[str] = field(default_factory=lambda: ["end", "head"])
    force_charset: Union[str, bool] = False
    expand_imports: bool = True
    css_linebreak_pos: int = 2048
    file_mode: Union[int, str, bool, None] = 0o664
    schemas: List[str] = field(default_factory=lambda: list(DEFAULT_SCHEMAS))
    exclude_bundles: List[str] = field(default_factory=list)
    remove_comments: bool = True
    exclude_files: List[str] = field(default_factory=list)
    css_exclude_media: List[str] = field(default_factory=list)
    minify_output: bool = False
    htmlmin_opts: Dict[str, Any] = field(default_factory=dict)

    def prepare(self) -> "ConsolidationConfig":
        """Normalize paths and make sure the minify directory is usable.

        Raises `ConfigurationError`, which is the only fatal error.
        """
        if not self.base_path:
            raise ConfigurationError("base_path is required")
        self.base_path = os.path.normpath(os.path.abspath(self.base_path))
        if not self.minify_path:
            self.minify_path = os.path.join(self.base_path, "minify")
        elif not os.path.isabs(self.minify_path):
            self.minify_path = os.path.join(self.base_path, self.minify_path)
        self.minify_path = os.path.normpath(self.minify_path)

        try:
            inside = os.path.commonpath([self.minify_path, self.base_path]) == self.base_path
        except ValueError:
            inside = False
        if not inside:
            raise ConfigurationError(f"minify_path `{self.minify_path}` must be inside base_path `{self.base_path}`")

        self.file_check_algorithm = normalize_algorithm(self.file_check_algorithm)
        self.file_mode = parse_file_mode(self.file_mode)
        if self.force_charset is True:
            raise ConfigurationError("force_charset must be a charset name or false")
        if self.css_linebreak_pos is None or self.css_linebreak_pos < 0:
            self.css_linebreak_pos = 0

        try:
            os.makedirs(self.minify_path, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create directory for compressed assets `{self.minify_path}`: {e}") from e
        if not os.access(self.minify_path, os.R_OK):
            raise ConfigurationError("Directory for compressed assets is not readable.")
        if not os.access(self.minify_path, os.W_OK):
            raise ConfigurationError("Directory for compressed assets is not writable.")
        return self
