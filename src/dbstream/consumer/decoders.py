"""
Default key and payload decoders.

Schema-aware backends plug in by implementing ``Decoder.decode``. None is
passed through untouched so tombstones stay tombstones.
"""

import json
from typing import Any, Optional

from ..core.exceptions import DecodeError


class Decoder:
    """Turns raw bytes into a value."""

    def decode(self, data: Optional[bytes]) -> Any:
        raise NotImplementedError


class JsonDecoder(Decoder):
    """
    Decodes UTF-8 JSON.

    With ``field`` set, the decoded value must be an object and only that
    field is returned; used for keys that wrap a single column.
    """

    def __init__(self, field: Optional[str] = None):
        self.field = field

    def decode(self, data: Optional[bytes]) -> Any:
        if data is None:
            return None
        try:
            if isinstance(data, (bytes, bytearray)):
                data = data.decode("utf-8")
            value = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecodeError(f"Invalid JSON: {e}") from e

        if self.field is None:
            return value
        if not isinstance(value, dict) or self.field not in value:
            raise DecodeError(f"Decoded value has no field '{self.field}'")
        return value[self.field]


class StringKeyDecoder(Decoder):
    """Decodes plain UTF-8 string keys."""

    def decode(self, data: Optional[bytes]) -> Optional[str]:
        if data is None:
            return None
        if isinstance(data, str):
            return data
        try:
            return bytes(data).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Key is not valid UTF-8: {e}") from e
