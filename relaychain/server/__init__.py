"""HTTP + SSE surface."""
