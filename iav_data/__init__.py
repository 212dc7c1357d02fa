"""Embedded resources: TUF bootstrap roots and JSON schemas."""
