"""
Accumulation of streamed response fragments.
"""

from collections.abc import AsyncIterator, Callable


class StreamAggregator:
    """Append-only buffer of fragments with a running snapshot.

    Fragments are applied in arrival order, so every snapshot is a prefix of
    every later one.
    """

    def __init__(self):
        self._fragments: list[str] = []
        self._snapshot = ""
        self._complete = False

    def append(self, fragment: str) -> str:
        """Apply one fragment and return the new snapshot."""
        if self._complete:
            raise RuntimeError("Cannot append to a completed stream")
        if not isinstance(fragment, str):
            raise TypeError(f"Fragments must be str, got {type(fragment).__name__}")
        self._fragments.append(fragment)
        self._snapshot += fragment
        return self._snapshot

    def complete(self) -> str:
        """Mark the upstream sequence as finished and return the final text."""
        self._complete = True
        return self._snapshot

    def snapshot(self) -> str:
        return self._snapshot

    def is_complete(self) -> bool:
        return self._complete

    @property
    def fragments(self) -> tuple[str, ...]:
        return tuple(self._fragments)

    def __len__(self) -> int:
        return len(self._snapshot)

    async def consume(
        self,
        fragments: AsyncIterator[str],
        on_update: Callable[[str], None] | None = None,
        should_continue: Callable[[], bool] | None = None,
    ) -> str | None:
        """Drain ``fragments``, calling ``on_update`` with each new snapshot.

        ``should_continue`` is checked after every fragment; when it returns
        False the source is closed and None is returned without completing.
        """
        try:
            async for fragment in fragments:
                if should_continue is not None and not should_continue():
                    return None
                snapshot = self.append(fragment)
                if on_update is not None:
                    on_update(snapshot)
        finally:
            aclose = getattr(fragments, "aclose", None)
            if aclose is not None:
                await aclose()
        return self.complete()
