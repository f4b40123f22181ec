"""Audit query module."""
