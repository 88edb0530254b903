"""In-memory completion cache and per-document sessions."""
