"""Application service helpers."""

from .store import SqlRealtimeStore, record_receipts, unread_message_ids

__all__ = ["SqlRealtimeStore", "record_receipts", "unread_message_ids"]
