"""calsync: incremental Google Calendar synchronization into PostgreSQL."""

__version__ = "0.1.0"
