"""Command-line interface for hybrid code search."""
