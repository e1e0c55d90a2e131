# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Tests for retrieval negotiation (offer, price ceiling, events, deadline).

All tests run against FakeNode; no network is involved.
"""

from __future__ import annotations

import asyncio
import logging
import re
from unittest.mock import AsyncMock

import pytest

from dataexpl.core.exceptions import NegotiationError, NodeAPIError, RetrievalTimeoutError
from dataexpl.core.models import DealStatus
from dataexpl.core.negotiator import NegotiationState, RetrievalNegotiator
from dataexpl.core.selector import Matcher, encode_selector

from .helpers import PIECE, FakeNode, file_node

SELECTOR = encode_selector(Matcher())
ROOT = file_node(b"payload")


class TestOffer:

    @pytest.mark.asyncio
    async def test_free_offer_completes(self):
        node = FakeNode(ROOT)
        negotiator = RetrievalNegotiator(node, max_price=0)

        ref = await negotiator.retrieve("f01000", PIECE, ROOT.cid, SELECTOR)

        assert ref.root == ROOT.cid
        assert ref.deal_id == 100
        assert negotiator.state == NegotiationState.COMPLETED
        assert negotiator.states[:4] == [
            NegotiationState.REQUESTING_OFFER,
            NegotiationState.OFFER_RECEIVED,
            NegotiationState.PRICE_CHECK,
            NegotiationState.SUBMITTED,
        ]
        order = node.submitted[0]
        assert order.selector == SELECTOR
        assert order.payer == "f1fakepayer"
        assert order.max_price == 0

    @pytest.mark.asyncio
    async def test_price_above_zero_ceiling_never_submits(self):
        node = FakeNode(ROOT, price=5)
        negotiator = RetrievalNegotiator(node, max_price=0)

        with pytest.raises(NegotiationError) as exc_info:
            await negotiator.retrieve("f01000", PIECE, ROOT.cid, SELECTOR)

        assert exc_info.value.code == "PRICE_EXCEEDED"
        assert "maxPrice: 0 (min 5," in str(exc_info.value)
        assert negotiator.state == NegotiationState.REJECTED
        assert node.submitted == []

    @pytest.mark.asyncio
    async def test_no_ceiling_accepts_any_price(self):
        node = FakeNode(ROOT, price=10 ** 18)
        negotiator = RetrievalNegotiator(node, max_price=None)

        await negotiator.retrieve("f01000", PIECE, ROOT.cid, SELECTOR)

        assert node.submitted[0].max_price is None

    @pytest.mark.asyncio
    async def test_offer_error(self):
        node = FakeNode(ROOT, offer_error="piece not unsealed")

        with pytest.raises(NegotiationError, match="offer error: piece not unsealed") as exc_info:
            await RetrievalNegotiator(node, max_price=0).retrieve("f01000", PIECE, ROOT.cid, SELECTOR)
        assert exc_info.value.code == "OFFER_ERROR"

    @pytest.mark.asyncio
    async def test_offer_call_failure(self):
        node = FakeNode(ROOT)
        node.query_offer = AsyncMock(side_effect=NodeAPIError("ClientMinerQueryOffer", "dial failed"))

        with pytest.raises(NegotiationError) as exc_info:
            await RetrievalNegotiator(node, max_price=0).retrieve("f01000", PIECE, ROOT.cid, SELECTOR)
        assert exc_info.value.code == "OFFER_FAILED"
        assert exc_info.value.state == "ERRORED"

    @pytest.mark.asyncio
    async def test_submit_failure(self):
        node = FakeNode(ROOT)
        node.submit_retrieval = AsyncMock(side_effect=NodeAPIError("ClientRetrieve", "no funds"))

        with pytest.raises(NegotiationError) as exc_info:
            await RetrievalNegotiator(node, max_price=0).retrieve("f01000", PIECE, ROOT.cid, SELECTOR)
        assert exc_info.value.code == "SUBMIT_FAILED"

    def test_negative_ceiling_rejected(self):
        with pytest.raises(ValueError):
            RetrievalNegotiator(FakeNode(), max_price=-1)


class TestEvents:

    @pytest.mark.asyncio
    async def test_events_for_other_deals_ignored(self):
        node = FakeNode(ROOT, noise=True)

        ref = await RetrievalNegotiator(node, max_price=0).retrieve("f01000", PIECE, ROOT.cid, SELECTOR)

        assert ref.deal_id == 100

    @pytest.mark.asyncio
    async def test_progress_is_logged_per_event(self, caplog):
        caplog.set_level(logging.INFO, logger="dataexpl.core.negotiator")
        node = FakeNode(ROOT, statuses=[DealStatus.Accepted, DealStatus.Ongoing, DealStatus.Completed])

        await RetrievalNegotiator(node, max_price=0).retrieve("f01000", PIECE, ROOT.cid, SELECTOR)

        progress = [r.getMessage() for r in caplog.records if r.getMessage().startswith("Recv ")]
        assert len(progress) == 3
        assert progress[0].startswith("Recv 0 B, Paid 0 FIL, Open (Accepted), ")
        assert progress[1].startswith("Recv 1 KiB, Paid 0 FIL, PaymentChannelErrored (Ongoing), ")
        assert progress[2].startswith("Recv 2 KiB, Paid 0 FIL, PaymentChannelCreateInitiated (Completed), ")
        assert all(re.search(r", \d+\.\d{3}s$", line) for line in progress)
        assert not any("ClientEvent" in line or "DealStatus" in line for line in progress)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, code, state", [
        (DealStatus.Rejected, "DEAL_REJECTED", NegotiationState.REJECTED),
        (DealStatus.DealNotFound, "DEAL_NOT_FOUND", NegotiationState.NOT_FOUND),
        (DealStatus.Errored, "DEAL_ERRORED", NegotiationState.ERRORED),
    ])
    async def test_terminal_failures(self, status, code, state):
        node = FakeNode(ROOT, statuses=[DealStatus.Accepted, status], message="provider said no")
        negotiator = RetrievalNegotiator(node, max_price=0)

        with pytest.raises(NegotiationError) as exc_info:
            await negotiator.retrieve("f01000", PIECE, ROOT.cid, SELECTOR)

        assert exc_info.value.code == code
        assert "provider said no" in str(exc_info.value)
        assert negotiator.state == state

    @pytest.mark.asyncio
    async def test_subscription_closed_early(self):
        node = FakeNode(ROOT, statuses=[DealStatus.Accepted])
        negotiator = RetrievalNegotiator(node, max_price=0, timeout=5)

        async def close_soon():
            await asyncio.sleep(0.05)
            node.close_subscriptions()

        closer = asyncio.create_task(close_soon())
        with pytest.raises(NegotiationError, match="subscription closed"):
            await negotiator.retrieve("f01000", PIECE, ROOT.cid, SELECTOR)
        await closer


class TestDeadline:

    @pytest.mark.asyncio
    async def test_timeout_cancels_deal(self):
        node = FakeNode(ROOT, hang=True)
        negotiator = RetrievalNegotiator(node, max_price=0, timeout=0.1)

        with pytest.raises(RetrievalTimeoutError, match="Retrieval Timed Out") as exc_info:
            await negotiator.retrieve("f01000", PIECE, ROOT.cid, SELECTOR)

        assert exc_info.value.deal_id == 100
        assert negotiator.state == NegotiationState.CANCELLED
        # Cancellation runs in the background.
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert node.cancelled == [100]

    @pytest.mark.asyncio
    async def test_caller_cancellation_cancels_deal(self):
        node = FakeNode(ROOT, hang=True)
        negotiator = RetrievalNegotiator(node, max_price=0, timeout=30)

        task = asyncio.create_task(negotiator.retrieve("f01000", PIECE, ROOT.cid, SELECTOR))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert node.cancelled == [100]
        assert negotiator.state == NegotiationState.CANCELLED
