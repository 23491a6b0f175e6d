"""Naive-UTC time helpers shared by the scheduler, pipeline and models."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (what the DB columns store)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
