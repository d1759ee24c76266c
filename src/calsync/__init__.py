"""calsync: keep a local calendar in step with Google Calendar and fire reminders."""

__version__ = "0.1.0"
