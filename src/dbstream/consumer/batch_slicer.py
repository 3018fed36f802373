"""
Splits a batch into key-disjoint slices.

A batch may hold several messages for the same key. Applying it as one
bulk statement would lose their order, so the batch is cut into slices:
slice *i* holds the *i*-th message of every key. Slices are applied in
sequence and the number of bulk statements equals the largest number of
messages any one key has.

    [C1, A1, B1, A2, C2, C3] -> [[C1, A1, B1], [C2, A2], [C3]]
"""

import json
from typing import Any, Dict, Hashable, List, Sequence

from .message import Message


def _key_identity(key: Any) -> Hashable:
    # Decoded keys may be dicts or lists.
    if isinstance(key, (dict, list)):
        return json.dumps(key, sort_keys=True, default=str)
    return key


def compact_messages(messages: Sequence[Message]) -> List[Message]:
    """Keep the last message per key, ordered by each key's last occurrence."""
    latest: Dict[Hashable, Message] = {}
    for message in messages:
        identity = _key_identity(message.key)
        latest.pop(identity, None)
        latest[identity] = message
    return list(latest.values())


class BatchSlicer:
    """Groups messages into ordered, key-disjoint slices."""

    @staticmethod
    def slice(
        messages: Sequence[Message],
        compacted: bool = False,
        no_keys: bool = False,
    ) -> List[List[Message]]:
        if not messages:
            return []

        if no_keys:
            return [list(messages)]

        if compacted:
            return [compact_messages(messages)]

        # dicts keep insertion order, so keys stay in first-seen order
        groups: Dict[Hashable, List[Message]] = {}
        for message in messages:
            groups.setdefault(_key_identity(message.key), []).append(message)

        depth = max(len(group) for group in groups.values())
        return [
            [group[index] for group in groups.values() if len(group) > index]
            for index in range(depth)
        ]
