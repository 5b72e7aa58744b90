"""Tests for the release-reconciler command line tool."""
