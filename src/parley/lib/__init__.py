"""Shared infrastructure: configuration, errors, logging, telemetry and retry helpers."""
