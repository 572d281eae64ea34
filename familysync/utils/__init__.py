"""Shared helpers."""

from familysync.utils.dates import (
    EPOCH,
    now_iso,
    parse_iso,
    to_iso,
)

__all__ = ["EPOCH", "now_iso", "parse_iso", "to_iso"]
