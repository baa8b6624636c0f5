"""Plaid Link result decoding."""
