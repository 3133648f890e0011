from typing import Iterator

BatchKey = tuple[int, int]  # (group index, batch index)


class HangTracker:
    """Outstanding URLs per (group, batch).

    Purely observational: a URL left in a set is reported as hung, nothing
    here blocks or cancels work.
    """

    def __init__(self):
        self._outstanding: dict[BatchKey, set[str]] = {}
        self._sizes: dict[BatchKey, int] = {}

    def start_batch(self, group_index: int, batch_index: int, urls: Iterator[str] | list[str]) -> None:
        key = (group_index, batch_index)
        self._outstanding[key] = set(urls)
        self._sizes[key] = len(self._outstanding[key])

    def complete(self, group_index: int, batch_index: int, url: str) -> bool:
        """Mark ``url`` done. False if it was not outstanding (duplicate reply)."""
        outstanding = self._outstanding.get((group_index, batch_index))
        if outstanding is None or url not in outstanding:
            return False
        outstanding.remove(url)
        return True

    def outstanding(self, group_index: int, batch_index: int) -> set[str]:
        return set(self._outstanding.get((group_index, batch_index), ()))

    def batch_size(self, group_index: int, batch_index: int) -> int:
        return self._sizes.get((group_index, batch_index), 0)

    def is_batch_done(self, group_index: int, batch_index: int) -> bool:
        return not self._outstanding.get((group_index, batch_index))

    def hung_by_batch(self) -> dict[BatchKey, set[str]]:
        return {key: set(urls) for key, urls in self._outstanding.items() if urls}

    def hung_urls(self) -> list[str]:
        return sorted(url for urls in self._outstanding.values() for url in urls)
