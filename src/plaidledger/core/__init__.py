"""Core types, errors, configuration and pure helpers."""
