"""Word Impostor: round and voting engine for a find-the-impostor party game."""

__version__ = "0.1.0"
