"""Command line interface for regraft."""
