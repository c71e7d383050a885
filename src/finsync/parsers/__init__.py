"""Parsers package — file importers, statement normalization, amount/date helpers."""
