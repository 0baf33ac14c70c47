"""Deterministic KPI aggregation and snapshot persistence."""
