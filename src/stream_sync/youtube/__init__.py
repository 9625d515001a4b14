"""YouTube Data API v3 client, quota constants and payload parsing."""
