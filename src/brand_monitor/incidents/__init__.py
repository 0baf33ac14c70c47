"""Incident evaluation over persisted KPI snapshots."""
