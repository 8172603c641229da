"""Time capsule delivery service."""
