"""Common helper functions for service layer."""

from __future__ import annotations


def apply_pagination(query, limit: int, offset: int):
    """Apply pagination to a query.

    Args:
        query: SQLAlchemy query object
        limit: Maximum number of results
        offset: Number of results to skip

    Returns:
        Query with pagination applied
    """
    return query.limit(limit).offset(offset)
