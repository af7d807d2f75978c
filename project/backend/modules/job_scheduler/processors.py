"""
Job item processing strategies.

Batched processing runs items of a batch concurrently with a pause between
batches. Sequential processing runs items one at a time in scene order so
later scenes can build on earlier results.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence

from shared.errors import ValidationError
from shared.logging import get_logger
from shared.models.job import Job, JobItem
from modules.job_scheduler.cancellation import CancellationToken

logger = get_logger("job_scheduler")

ItemHandler = Callable[[Job, JobItem], Awaitable[Optional[str]]]
ItemCallback = Callable[[JobItem, Optional[str], Optional[str]], Awaitable[None]]


def partition(items: Sequence[JobItem], batch_size: int) -> List[List[JobItem]]:
    """Split items into consecutive batches of at most batch_size."""
    if batch_size < 1:
        raise ValidationError(f"Batch size must be >= 1, got {batch_size}")
    return [list(items[i:i + batch_size]) for i in range(0, len(items), batch_size)]


async def run_item(
    job: Job,
    item: JobItem,
    handler: ItemHandler,
    token: CancellationToken,
    on_item_done: ItemCallback,
) -> None:
    """
    Run one item and report its outcome.

    Item failures are reported, never raised. The only exception that
    escapes is CancellationError, raised before the item starts.
    """
    token.raise_if_cancelled()
    try:
        result = await handler(job, item)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning(
            f"Item for scene {item.scene_number} failed",
            extra={"job_id": job.id, "scene_id": item.scene_id, "error": str(e)}
        )
        await on_item_done(item, None, str(e) or e.__class__.__name__)
        return
    await on_item_done(item, result, None)


async def process_batched(
    job: Job,
    handler: ItemHandler,
    token: CancellationToken,
    on_item_done: ItemCallback,
    batch_size: int,
    batch_delay: float,
) -> None:
    """
    Process job items in concurrent batches.

    Cancellation is checked before each batch and before each item; items
    already running finish. Raises CancellationError once cancelled.
    """
    batches = partition(job.items, batch_size)
    for index, batch in enumerate(batches):
        token.raise_if_cancelled()
        logger.info(
            f"Processing batch {index + 1}/{len(batches)} ({len(batch)} items)",
            extra={"job_id": job.id, "batch": index + 1, "batch_count": len(batches)}
        )
        outcomes = await asyncio.gather(
            *(run_item(job, item, handler, token, on_item_done) for item in batch),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        if index < len(batches) - 1 and batch_delay > 0:
            await asyncio.sleep(batch_delay)
    token.raise_if_cancelled()


async def process_sequential(
    job: Job,
    handler: ItemHandler,
    token: CancellationToken,
    on_item_done: ItemCallback,
) -> None:
    """Process job items one at a time in scene-number order."""
    for item in sorted(job.items, key=lambda i: i.scene_number):
        await run_item(job, item, handler, token, on_item_done)
    token.raise_if_cancelled()
