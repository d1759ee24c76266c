"""Core infrastructure: logging, local persistence, and the reminder scheduler."""
