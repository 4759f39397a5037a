"""
Half-open interval overlap rule shared by every availability check.

Reservation-vs-reservation, reservation-vs-block and block-vs-block checks all
go through these two functions (the database guards in database.py spell out
the same comparison in SQL).
"""
from sqlalchemy import and_


def overlaps(start_a, end_a, start_b, end_b) -> bool:
    """True when [start_a, end_a) and [start_b, end_b) share at least one instant."""
    return start_a < end_b and start_b < end_a


def overlap_clause(start_column, end_column, start, end):
    """SQL form of overlaps() for rows whose interval is [start_column, end_column)."""
    return and_(start_column < end, start < end_column)
