"""Data models: ORM tables, API schemas and domain value types."""
