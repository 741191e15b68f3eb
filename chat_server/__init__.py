"""Key directory and opaque message store server."""
