"""
Stream message value object.
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class Message:
    """
    One stream record.

    ``payload`` of None marks a tombstone: the keyed row must be deleted.
    """
    key: Any
    payload: Any
    offset: Optional[int] = None

    @property
    def tombstone(self) -> bool:
        return self.payload is None
