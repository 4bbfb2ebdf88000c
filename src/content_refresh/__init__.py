"""Content refresh: batch prioritization and exclusive rewrite pipeline."""

__version__ = "0.1.0"
