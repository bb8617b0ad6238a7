"""CLI command modules for Scanwatch."""
