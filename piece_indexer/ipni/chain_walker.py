"""
IPNI Advertisement Chain Walker

Walks each index provider's advertisement chain backwards, one advertisement
per step, from the chain head announced to IPNI down to the head of the
previous completed walk (or the start of the chain).

Walk lifecycle per provider:
1. IDLE, new head announced -> start walk (head = tail = announced head)
2. WALKING -> fetch tail, move tail to PreviousID
3. PreviousID missing or equal to last_head -> walk complete, back to IDLE
   with last_head = head

The cursor is persisted after every step, so a restarted process resumes
exactly where it stopped.
"""

import asyncio
import dataclasses
import logging
import re
import time
from typing import Awaitable, Callable, Optional, Union

from ..errors import describe_failure
from ..types import (
    IndexEntry,
    ProviderInfo,
    Repository,
    StepOutcome,
    StepResult,
    WalkerState,
)
from .fetcher import AdvertisementFetcher


# Exponential back-off for failing providers (seconds)
BACKOFF_INITIAL_INTERVAL = 1.0
BACKOFF_MAX_INTERVAL = 60.0

HTTP_ADDRESS_PATTERN = re.compile(r"^https?://")

logger = logging.getLogger("ChainWalker")

ProviderInfoGetter = Callable[[str], Union[ProviderInfo, Awaitable[ProviderInfo]]]


# =============================================================================
# Chain-Step Processor
# =============================================================================

async def process_next_advertisement(
    provider_id: str,
    provider_info: ProviderInfo,
    walker_state: Optional[WalkerState],
    fetcher: AdvertisementFetcher,
    fetch_timeout: Optional[float] = None
) -> StepResult:
    """
    Compute the next walker state from one fetched advertisement.

    Does not touch persistence; the caller stores new_state and index_entry.

    Returns:
        StepResult. finished=True means there is nothing more to walk for
        now; failed=True means the fetch failed and the tail did not move.
    """
    address = provider_info.provider_address or ""
    if not HTTP_ADDRESS_PATTERN.match(address):
        logger.debug(f"Skipping provider {provider_id} - address is not HTTP(s): {address}")
        previous = walker_state or WalkerState()
        return StepResult(
            new_state=dataclasses.replace(
                previous,
                head=None,
                tail=None,
                status=f"Index provider advertises over an unsupported protocol: {address}"
            ),
            finished=True
        )

    next_head = provider_info.last_advertisement_cid

    if walker_state is not None and walker_state.tail:
        logger.debug(f"Next step for provider {provider_id} ({address}): {walker_state.tail}")
        state = walker_state
    elif walker_state is not None and next_head == walker_state.last_head:
        logger.debug(f"No new advertisements from provider {provider_id} ({address})")
        return StepResult(finished=True)
    else:
        logger.debug(f"New walk for provider {provider_id} ({address}): {next_head}")
        previous = walker_state or WalkerState()
        state = dataclasses.replace(
            previous,
            head=next_head,
            tail=next_head,
            status=f"Walking the advertisements from {next_head}, next step: {next_head}"
        )

    try:
        payload = await fetcher.fetch_advertised_payload(address, state.tail, fetch_timeout)
    except Exception as e:
        reason = describe_failure(e, default_url=address)
        if reason == "internal error":
            logger.exception(
                f"Cannot process provider {provider_id} ({address}) advertisement {state.tail}"
            )
        else:
            logger.warning(
                f"Cannot process provider {provider_id} ({address}) advertisement {state.tail}: {reason}"
            )
        return StepResult(
            new_state=dataclasses.replace(state, status=f"Error processing {state.tail}: {reason}"),
            failed=True
        )

    previous_cid = payload.previous_advertisement_cid
    if not previous_cid or previous_cid == state.last_head:
        # Walk complete
        new_state = dataclasses.replace(
            state,
            head=None,
            tail=None,
            last_head=state.head,
            status=f"All advertisements from {state.head} to the end of the chain were processed."
        )
    else:
        new_state = dataclasses.replace(
            state,
            tail=previous_cid,
            status=f"Walking the advertisements from {state.head}, next step: {previous_cid}"
        )

    if payload.entries_fetch_error:
        new_state = dataclasses.replace(
            new_state,
            entries_not_retrievable=new_state.entries_not_retrievable + 1
        )
    if payload.payload_cid and not payload.piece_cid:
        new_state = dataclasses.replace(
            new_state,
            ads_missing_piece_cid=new_state.ads_missing_piece_cid + 1
        )

    index_entry = None
    if payload.piece_cid and payload.payload_cid:
        index_entry = IndexEntry(payload_cid=payload.payload_cid, piece_cid=payload.piece_cid)

    return StepResult(
        new_state=new_state,
        index_entry=index_entry,
        finished=new_state.tail is None
    )


async def walk_one_step(
    repository: Repository,
    provider_id: str,
    provider_info: ProviderInfo,
    fetcher: AdvertisementFetcher,
    walker_state: Optional[WalkerState] = None,
    fetch_timeout: Optional[float] = None
) -> StepOutcome:
    """
    Run one chain step and persist its results.

    Repository calls run in the default executor.

    Args:
        walker_state: cached state from the previous step; loaded from the
            repository when omitted
    """
    if walker_state is None:
        logger.debug(f"FETCHING walker state from the repository for provider {provider_id}")
        walker_state = await _in_executor(repository.get_walker_state, provider_id)
    else:
        logger.debug(f"REUSING walker state for provider {provider_id}")

    result = await process_next_advertisement(
        provider_id,
        provider_info,
        walker_state,
        fetcher,
        fetch_timeout=fetch_timeout
    )

    if result.new_state is not None:
        await _in_executor(repository.set_walker_state, provider_id, result.new_state)
        walker_state = result.new_state

    if result.index_entry is not None and result.index_entry.piece_cid:
        await _in_executor(
            repository.add_piece_payload_blocks,
            provider_id,
            result.index_entry.piece_cid,
            result.index_entry.payload_cid
        )

    return StepOutcome(
        walker_state=walker_state,
        finished=result.finished,
        failed=result.failed
    )


async def _in_executor(func, *args):
    # Blocking I/O, run in thread pool
    return await asyncio.get_running_loop().run_in_executor(None, func, *args)


# =============================================================================
# Provider Walker
# =============================================================================

def next_step_interval(previous_interval: float, failed: bool, min_interval: float) -> float:
    """
    Pacing policy between two steps of the same provider.

    Failure: jump to 1s, then double, capped at 60s.
    Success: back to min_interval immediately.
    """
    if not failed:
        return min_interval
    if previous_interval < BACKOFF_INITIAL_INTERVAL:
        return BACKOFF_INITIAL_INTERVAL
    return min(previous_interval * 2, BACKOFF_MAX_INTERVAL)


async def walk_chain(
    repository: Repository,
    provider_id: str,
    get_provider_info: ProviderInfoGetter,
    fetcher: AdvertisementFetcher,
    min_step_interval: float,
    stop_event: Optional[asyncio.Event] = None,
    fetch_timeout: Optional[float] = None
) -> None:
    """
    Walk one provider's chain until it is drained or stop_event is set.

    get_provider_info is called before every step so address or head
    changes published by the provider sync are picked up mid-walk.
    """
    step_interval = min_step_interval
    walker_state: Optional[WalkerState] = None

    while not (stop_event and stop_event.is_set()):
        started = time.monotonic()
        provider_info = get_provider_info(provider_id)
        if asyncio.iscoroutine(provider_info):
            provider_info = await provider_info

        failed = False
        try:
            outcome = await walk_one_step(
                repository,
                provider_id,
                provider_info,
                fetcher,
                walker_state=walker_state,
                fetch_timeout=fetch_timeout
            )
            walker_state = outcome.walker_state
            logger.debug(f"Got new walker state for provider {provider_id}: {walker_state}")
            if outcome.finished:
                break
            failed = outcome.failed
        except Exception:
            failed = True
            logger.exception(
                f"Error indexing provider {provider_id} ({provider_info.provider_address})"
            )

        step_interval = next_step_interval(step_interval, failed, min_step_interval)
        delay = step_interval - (time.monotonic() - started)
        if delay > 0:
            logger.debug(
                f"Waiting for {delay:.3f}s before the next step for provider {provider_id} "
                f"({provider_info.provider_address})"
            )
            await sleep_unless_stopped(delay, stop_event)


async def sleep_unless_stopped(delay: float, stop_event: Optional[asyncio.Event]) -> None:
    if stop_event is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass
