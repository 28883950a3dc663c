"""Typer CLI for the Catalog Mirror API."""
