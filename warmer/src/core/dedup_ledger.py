"""
Deduplication Ledger
=====================

The gateway delivers at-least-once: reconnects and history syncs replay
messages we already handled. Every inbound event is fingerprinted as

    "<source>_<delivery timestamp>_<first 20 chars of body>"

and checked here before anything else runs.

The ledger keeps insertion order. Once it grows past `capacity` it is cut
back to the most recent `capacity // 2` fingerprints, so a replay older than
that window would be processed again (accepted risk).
"""

from collections import OrderedDict

DEFAULT_CAPACITY = 1000
BODY_PREFIX_CHARS = 20


def fingerprint(source: str, timestamp, body: str) -> str:
    return f"{source}_{timestamp}_{(body or '')[:BODY_PREFIX_CHARS]}"


class DeduplicationLedger:
    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 2:
            raise ValueError("capacity must be at least 2")
        self.capacity = capacity
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def __len__(self):
        return len(self._seen)

    def __contains__(self, key: str) -> bool:
        return key in self._seen

    def check_and_record(self, key: str) -> bool:
        """
        Returns True the first time `key` is seen, False for a duplicate.
        Check + record is one synchronous step, so two interleaved handlers
        can never both see the same key as new.
        """
        if key in self._seen:
            return False
        self._seen[key] = None
        if len(self._seen) > self.capacity:
            self._truncate()
        return True

    def _truncate(self):
        keep = self.capacity // 2
        while len(self._seen) > keep:
            self._seen.popitem(last=False)

    def clear(self):
        self._seen.clear()
