"""Shared test helpers for the attosprint test suite."""
