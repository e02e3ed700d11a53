"""Command line tools for console operators."""
