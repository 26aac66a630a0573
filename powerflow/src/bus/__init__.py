"""Message bus adapters feeding the ingestor."""
