"""Test helpers for tabserve."""
