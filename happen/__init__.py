"""happen: a terminal reader that merges syndication feeds into one live list."""

__version__ = "0.3.0"
