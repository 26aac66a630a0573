"""Blueprint schemas, aggregation and message ingestion services."""
