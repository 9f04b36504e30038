"""Roast monitor backend: serial temperature probe, live telemetry and roast sessions."""
