"""Command-line interface for dbkeeper."""
