"""Small shared helpers (pytrees, logging, run directories)."""
