# feedworker/core/worker/claim.py
"""
Claiming one feed item for exclusive processing.

A claim is a single store transaction that removes the item at a location
and hands back whatever value was there. Because the store evaluates the
proposal against the value present at commit time, at most one of any
number of concurrent claimers sees both "committed" and a value.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from result import is_err

from feedworker.core.brokers.base import FeedStore, ItemRef
from feedworker.core.brokers.result_types import StoreErrorCode, StoreOperationError
from feedworker.core.logging import get_logger
from feedworker.core.models.job import Job
from feedworker.core.utils.db import store_error_from_exception

logger = get_logger('claim')


@dataclass(frozen=True, slots=True)
class ClaimWon:
    """This worker now exclusively owns `job`."""

    job: Job


@dataclass(frozen=True, slots=True)
class ClaimLost:
    """Another claimer got there first, or the item was already gone."""

    location: ItemRef
    committed: bool


@dataclass(frozen=True, slots=True)
class ClaimFault:
    """The transaction itself failed; nothing is known about the item."""

    location: ItemRef
    error: StoreOperationError


type ClaimOutcome = ClaimWon | ClaimLost | ClaimFault


class _Candidate:
    """Captures the value a transaction saw before proposing its removal."""

    __slots__ = ('value',)

    def __init__(self) -> None:
        self.value: Any = None

    def propose(self, current: Any) -> None:
        # The store may call this more than once; the last call is the one
        # evaluated against the committed state.
        self.value = current
        return None


async def attempt_claim(store: FeedStore, location: ItemRef) -> ClaimOutcome:
    """Try once to take the item at `location`. Never retries."""
    candidate = _Candidate()
    try:
        tx_r = await store.transact(location, candidate.propose)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        # A store that raises instead of returning Err is still a store fault.
        logger.exception(f'Store raised during claim of {location}')
        return ClaimFault(
            location,
            store_error_from_exception(
                StoreErrorCode.TRANSACTION_FAILED, f'Claim of {location}', exc,
            ),
        )

    if is_err(tx_r):
        return ClaimFault(location, tx_r.err_value)

    outcome = tx_r.ok_value
    if not outcome.committed or candidate.value is None:
        logger.debug(f'Lost claim on {location} (committed={outcome.committed})')
        return ClaimLost(location, outcome.committed)

    job = Job.from_value(candidate.value)
    if job.identifier is None:
        job = job.with_identifier(location.key)
    return ClaimWon(job)
