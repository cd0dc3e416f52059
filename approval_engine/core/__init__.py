"""Approval engine core: exception hierarchy."""
