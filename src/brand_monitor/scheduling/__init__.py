"""Report schedules and the slot trigger."""
