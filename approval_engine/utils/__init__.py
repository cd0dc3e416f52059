"""Shared utilities: error responses, transaction helpers."""
