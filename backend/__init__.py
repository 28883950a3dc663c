"""Catalog mirror backend packages."""
