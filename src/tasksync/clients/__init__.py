"""HTTP clients for the task manager and the calendar provider."""
