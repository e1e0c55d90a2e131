# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Retrieval negotiation: offer, price check, order, event loop.

One :class:`RetrievalNegotiator` call makes exactly one attempt::

    REQUESTING_OFFER -> OFFER_RECEIVED -> PRICE_CHECK -> SUBMITTED
        -> COMPLETED | REJECTED | NOT_FOUND | ERRORED | CANCELLED

The event subscription is shared by every deal the node runs, so events
are filtered by deal id.  The subscription is opened before the order is
submitted so early events cannot be missed.

On deadline expiry or caller cancellation the deal is cancelled on the
node by a background task; the caller never waits for that call.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, List, Optional, Set

from multiformats import CID

from dataexpl.config import RETRIEVAL_TIMEOUT_SECONDS
from dataexpl.core.exceptions import DataExplError, NegotiationError, RetrievalTimeoutError
from dataexpl.core.models import DealStatus, ExportRef, RetrievalEvent, event_name, status_name
from dataexpl.core.services import RetrievalService
from dataexpl.core.units import fil_str, size_str

logger = logging.getLogger(__name__)

__all__ = ["NegotiationState", "RetrievalNegotiator"]


class NegotiationState(str, Enum):
    REQUESTING_OFFER = "REQUESTING_OFFER"
    OFFER_RECEIVED = "OFFER_RECEIVED"
    PRICE_CHECK = "PRICE_CHECK"
    SUBMITTED = "SUBMITTED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    NOT_FOUND = "NOT_FOUND"
    ERRORED = "ERRORED"
    CANCELLED = "CANCELLED"


# Strong references to in-flight cancellation tasks.
_background_tasks: Set[asyncio.Task] = set()


def _cancel_done(deal_id: int, task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        logger.warning("Cancelling retrieval deal %d was itself cancelled", deal_id)
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Cancelling retrieval deal %d failed: %s", deal_id, exc)
    else:
        logger.info("Retrieval deal %d cancelled", deal_id)


class RetrievalNegotiator:
    """Drives one retrieval from offer to a terminal state.

    Parameters
    ----------
    service : RetrievalService
        Node API used for every remote call.
    max_price : int or None
        Price ceiling in attoFIL.  ``0`` accepts free offers only; ``None``
        disables the ceiling and is logged as a warning.
    timeout : float
        Seconds allowed for the event loop once the order is submitted.
    payer : str or None
        Paying wallet; the node's default wallet when None.
    """

    def __init__(
        self,
        service: RetrievalService,
        *,
        max_price: Optional[int],
        timeout: float = RETRIEVAL_TIMEOUT_SECONDS,
        payer: Optional[str] = None,
    ):
        if max_price is not None and max_price < 0:
            raise ValueError(f"max_price must not be negative, got {max_price}")
        self._service = service
        self.max_price = max_price
        self.timeout = timeout
        self.payer = payer
        self.states: List[NegotiationState] = []

        if max_price is None:
            logger.warning("Retrieval price ceiling disabled: offers at any price will be accepted")

    @property
    def state(self) -> Optional[NegotiationState]:
        return self.states[-1] if self.states else None

    def _enter(self, state: NegotiationState) -> None:
        self.states.append(state)
        logger.debug("Retrieval negotiation -> %s", state.value)

    def _fail(self, error: NegotiationError) -> NegotiationError:
        self._enter(NegotiationState(error.state))
        return error

    async def retrieve(self, provider: str, piece: Optional[CID], root: CID, selector: str) -> ExportRef:
        """Retrieve ``root`` from ``provider`` limited to ``selector``.

        Returns
        -------
        ExportRef
            Reference the node can export the retrieved blocks from.

        Raises
        ------
        NegotiationError
            Offer failure, price above the ceiling, or a failed deal.
        RetrievalTimeoutError
            The deadline expired before a terminal event.
        asyncio.CancelledError
            The caller was cancelled; the deal is cancelled in the background.
        """
        self._enter(NegotiationState.REQUESTING_OFFER)
        try:
            offer = await self._service.query_offer(provider, root, piece)
        except DataExplError as exc:
            raise self._fail(NegotiationError.offer_failed(str(exc))) from exc

        self._enter(NegotiationState.OFFER_RECEIVED)
        if offer.error:
            raise self._fail(NegotiationError.offer_error(offer.error))

        self._enter(NegotiationState.PRICE_CHECK)
        if self.max_price is not None and offer.min_price > self.max_price:
            raise self._fail(
                NegotiationError.price_exceeded(self.max_price, offer.min_price, fil_str(offer.min_price))
            )

        payer = self.payer
        if payer is None:
            try:
                payer = await self._service.wallet_default_address()
            except DataExplError as exc:
                raise self._fail(NegotiationError.submit_failed(f"resolving payer: {exc}")) from exc

        order = offer.order(payer, selector, self.max_price)
        loop = asyncio.get_running_loop()

        async with self._service.subscribe_retrieval_events() as events:
            try:
                deal_id = await self._service.submit_retrieval(order)
            except DataExplError as exc:
                raise self._fail(NegotiationError.submit_failed(str(exc))) from exc
            self._enter(NegotiationState.SUBMITTED)
            logger.info("Retrieval deal %d submitted to %s for %s", deal_id, provider, root)

            start = loop.time()
            try:
                await self._consume(events, deal_id, start, start + self.timeout)
            except asyncio.TimeoutError:
                self._abandon(deal_id)
                raise RetrievalTimeoutError(deal_id) from None
            except asyncio.CancelledError:
                self._abandon(deal_id)
                raise

        return ExportRef(root=root, deal_id=deal_id)

    def _abandon(self, deal_id: int) -> None:
        self._enter(NegotiationState.CANCELLED)
        task = asyncio.get_running_loop().create_task(self._service.cancel_retrieval(deal_id))
        _background_tasks.add(task)
        task.add_done_callback(lambda t: _cancel_done(deal_id, t))

    async def _consume(
        self,
        events: AsyncIterator[RetrievalEvent],
        deal_id: int,
        start: float,
        deadline: float,
    ) -> None:
        loop = asyncio.get_running_loop()
        iterator = events.__aiter__()

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError()
            try:
                event = await asyncio.wait_for(iterator.__anext__(), remaining)
            except StopAsyncIteration:
                raise self._fail(
                    NegotiationError.errored("event subscription closed before the deal finished")
                ) from None

            if event.deal_id != deal_id:
                continue

            logger.info(
                "Recv %s, Paid %s, %s (%s), %.3fs",
                size_str(event.bytes_received),
                fil_str(event.total_paid),
                event_name(event.event),
                status_name(event.status),
                loop.time() - start,
            )

            if event.status == DealStatus.Completed:
                self._enter(NegotiationState.COMPLETED)
                return
            if event.status == DealStatus.Rejected:
                raise self._fail(NegotiationError.rejected(event.message))
            if event.status == DealStatus.DealNotFound:
                raise self._fail(NegotiationError.not_found(event.message))
            if event.status == DealStatus.Errored:
                raise self._fail(NegotiationError.errored(event.message))
