from __future__ import annotations

from enum import Enum


class UserRole(str, Enum):
    """Application-wide role assigned to a user account."""

    USER = "user"
    ADMIN = "admin"


class DeliveryStatus(str, Enum):
    """Aggregate delivery state of a message across chat participants."""

    SENT = "sent"
    PARTIALLY_DELIVERED = "partially_delivered"
    DELIVERED = "delivered"
    PARTIALLY_READ = "partially_read"
    READ = "read"
