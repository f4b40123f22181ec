"""
OSS Manager: access-control and session core of the object storage console.
"""

__version__ = "1.0.0"
