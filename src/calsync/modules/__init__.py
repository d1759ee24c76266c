"""Feature modules: remote calendar client, sync service, and reminders."""
