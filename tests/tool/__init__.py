"""Tests for helm-sync tools."""
