"""
KOL Service Layer

Reserved-list membership for the KOL position lane.
"""

from app.services.kol.service import (
    KolEntry,
    KolIndex,
)

__all__ = [
    "KolEntry",
    "KolIndex",
]
