"""Tests for helm-sync."""
