from collections.abc import Iterator


class SubscriptionRegistry:
    """Resources the local client subscribed to through the bridge.

    Each uri maps to itself. Subscribing twice keeps a single entry, so
    shutdown sends at most one unsubscribe per uri.
    """

    def __init__(self) -> None:
        self._entries: dict[str, str] = {}

    def record(self, uri: str) -> None:
        self._entries[uri] = uri

    def forget(self, uri: str) -> None:
        self._entries.pop(uri, None)

    def all_entries(self) -> Iterator[str]:
        """Iterate over the uris recorded at the time of the call."""
        return iter(tuple(self._entries.values()))

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, uri: object) -> bool:
        return uri in self._entries
