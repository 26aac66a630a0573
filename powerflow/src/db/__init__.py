"""SQLite persistence: ORM models, engine factory and the telemetry store."""
