"""Tests for release-gate."""
