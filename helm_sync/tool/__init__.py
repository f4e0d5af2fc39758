"""Command line tool for helm-sync."""
