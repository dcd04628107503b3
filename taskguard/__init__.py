"""Task Guard: task-aware navigation gatekeeper backend."""
