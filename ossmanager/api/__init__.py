"""OSS Manager API package."""
