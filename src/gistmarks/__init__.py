"""gistmarks: a bookmark collection kept as Markdown in a GitHub Gist."""

__version__ = "0.1.0"
