"""Command line interface for adorb."""
