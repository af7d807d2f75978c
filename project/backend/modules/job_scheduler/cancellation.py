"""
Cooperative cancellation tokens.

A token is passed down the job processing call tree and checked at batch
and item boundaries. In-flight provider calls are never interrupted.
"""

from typing import Optional

from shared.errors import CancellationError
from shared.models.job import CANCELLED_MESSAGE


class CancellationToken:
    """Cancellation flag for one job."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def cancel(self, reason: str = CANCELLED_MESSAGE) -> None:
        if self.reason is None:
            self.reason = reason

    def raise_if_cancelled(self) -> None:
        """
        Raise if the job was cancelled.

        Raises:
            CancellationError: If cancel() has been called
        """
        if self.reason is not None:
            raise CancellationError(self.job_id, self.reason)
