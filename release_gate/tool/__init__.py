"""Command line tool for release-gate."""
