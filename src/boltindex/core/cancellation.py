from typing import Optional

from boltindex.core.errors import RunCancelledError


class CancellationToken:
    """
    Cooperative cancellation flag shared by one pipeline run.

    Checked before every external call; once set it stays set.
    """

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled"):
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self):
        if self._cancelled:
            raise RunCancelledError(self.reason or "cancelled")
