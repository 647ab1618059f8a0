"""
Single-slot holder for the most recently observed failure.
"""

import threading
from typing import Optional


class SharedFailureCell:
    """
    Last-write-wins reference to the latest failure seen by a classifier.

    Written by any number of concurrent retry loops and read by diagnostics.
    The lock only guards one reference assignment, so writers never wait on
    anything slower than another writer's store. Readers must not assume
    which writer's failure is visible. The cell is overwritten, never cleared.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._failure: Optional[BaseException] = None

    def publish(self, failure: BaseException) -> None:
        with self._lock:
            self._failure = failure

    def load(self) -> Optional[BaseException]:
        with self._lock:
            return self._failure

    def __repr__(self) -> str:
        return f"SharedFailureCell({self.load()!r})"
