"""polymodo: application launcher daemon with live fuzzy search."""

__version__ = "0.1.0"
