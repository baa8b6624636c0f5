"""Command line shell."""
