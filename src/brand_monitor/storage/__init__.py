"""SQLite storage layer: engine policy, tables and migrations."""
