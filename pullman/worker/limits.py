from threading import Lock
from types import TracebackType


class ConcurrencyLimit:
    """Limit the number of tasks doing something concurrently at once."""

    limit: int
    claimed: int = 0

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")

        self.limit = limit
        self._lock = Lock()

    def claim(self) -> None:
        """Claim a slot in the concurrency limit, even if that exceeds it."""

        with self._lock:
            self.claimed += 1

    def try_claim(self) -> bool:
        """Claim a slot only if one is free.

        @return: True if a slot was claimed
        """

        with self._lock:
            if self.claimed >= self.limit:
                return False

            self.claimed += 1
            return True

    def free(self) -> None:
        """Free a slot in the concurrency limit."""

        with self._lock:
            self.claimed -= 1
            self.claimed = max(0, self.claimed)

    def available(self) -> int:
        """How many slots are free?"""

        with self._lock:
            return max(0, self.limit - self.claimed)

    def satisfied(self) -> bool:
        """Is there at least one free slot?"""

        with self._lock:
            return self.claimed < self.limit

    def __enter__(self) -> "ConcurrencyLimit":
        """Enter the context manager by claiming a slot."""

        self.claim()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit the context manager by freeing a slot."""

        self.free()
        return None
