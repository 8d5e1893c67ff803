"""Bounded least-recently-seen key store."""

from collections import OrderedDict


class RecentKeys:
    """Bounded set of recently seen keys (oldest evicted first).

    A key can carry a value, so the same structure doubles as a bounded
    lookup table.
    """

    def __init__(self, max_size: int = 10_000):
        self.max_size = max_size
        self._keys: OrderedDict = OrderedDict()

    def add(self, key, value=None) -> bool:
        """Remember a key.

        Returns:
            False if the key was already present
        """
        if key in self._keys:
            self._keys.move_to_end(key)
            return False
        self._keys[key] = value
        if len(self._keys) > self.max_size:
            self._keys.popitem(last=False)
        return True

    def get(self, key, default=None):
        return self._keys.get(key, default)

    def __contains__(self, key) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)
