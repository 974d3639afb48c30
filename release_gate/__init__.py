"""
.. include:: ../README.md
"""

__all__ = [
    "topology",
    "secrets",
    "health",
    "renderer",
    "manifest",
    "packager",
    "publisher",
    "pipeline",
    "config",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
