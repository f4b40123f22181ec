"""Administration module."""
