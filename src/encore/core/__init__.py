"""Ambient infrastructure: structured logging, tracing, and metrics."""
