"""Tests for release backends."""
