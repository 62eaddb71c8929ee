"""
Celery tasks for background sync runs.
"""

import asyncio
import logging

from celery import shared_task

from drivesync.exceptions import TransientError

logger = logging.getLogger(__name__)


async def _run_sync(
    source: str,
    destination: str,
    concurrency: int | None,
    dry_run: bool,
    prune: bool,
):
    from drivesync.locations import Location, open_storage
    from drivesync.secrets import IdentityStore
    from drivesync.sync import sync

    store = IdentityStore()
    source_storage = await open_storage(Location.parse(source), store)
    destination_storage = await open_storage(Location.parse(destination), store)
    return await sync(
        source_storage,
        destination_storage,
        concurrency=concurrency,
        dry_run=dry_run,
        prune=prune,
    )


@shared_task(
    bind=True,
    autoretry_for=(TransientError,),
    retry_backoff=True,
    retry_backoff_max=600,
    max_retries=3,
)
def sync_task(
    self,
    source: str,
    destination: str,
    concurrency: int | None = None,
    dry_run: bool = False,
    prune: bool = False,
):
    """
    Mirror one location onto another.

    Args:
        source: Source location, local path or ``name:path``
        destination: Destination location
        concurrency: Bound on in-flight backend operations
        dry_run: Only log what would change
        prune: Delete destination files missing from the source afterwards

    Returns:
        Summary dict of the run
    """
    logger.info(f"Starting sync task {source} -> {destination}")

    result = asyncio.run(_run_sync(source, destination, concurrency, dry_run, prune))

    summary = result.to_dict()
    summary["source"] = source
    summary["destination"] = destination

    if result.ok:
        logger.info(f"Sync task {source} -> {destination} completed")
    else:
        logger.warning(
            f"Sync task {source} -> {destination} finished with "
            f"{len(result.failures)} failure(s)"
        )
    return summary
