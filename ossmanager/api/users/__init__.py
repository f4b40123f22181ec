"""Current user module."""
