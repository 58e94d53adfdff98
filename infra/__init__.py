"""Runtime infrastructure: settings and logging."""
