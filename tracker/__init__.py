"""Support-ticket lifecycle core."""
