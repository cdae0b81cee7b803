"""
Errors raised while consolidating CSS/JS assets.

Only `ConfigurationError` is fatal; every other error is handled inside the
engine and degrades a single member or bundle.
"""


class ConsolidationError(Exception):
    """Base class for all consolidation errors."""


class ConfigurationError(ConsolidationError):
    """The configuration is invalid or the output directory is unusable."""


class PathResolutionError(ConsolidationError):
    """A reference cannot be mapped to a readable file under the web root."""


class ImportResolutionError(ConsolidationError):
    """A local `@import` is cyclic or cannot be read."""


class MinificationError(ConsolidationError):
    """The minifier failed on the assembled bundle text."""


class WriteError(ConsolidationError):
    """A bundle file could not be persisted."""
