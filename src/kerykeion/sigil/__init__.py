"""Sigil - signing key loading."""
