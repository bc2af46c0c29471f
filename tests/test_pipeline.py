"""Tests for the learning approval pipeline."""

import asyncio
import dataclasses

import pytest

from handoff.errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from handoff.learning import ReviewDecision
from handoff.models import LearningProposal, LearningStatus, Priority, ResolutionAction

from conftest import seed_knowledge


def proposal(content: str = "Haircuts cost $30 on weekdays", **kwargs) -> LearningProposal:
    kwargs.setdefault("shop_id", 1)
    kwargs.setdefault("source_type", "correction")
    kwargs.setdefault("source_id", "fb-1")
    kwargs.setdefault("confidence_score", 80)
    return LearningProposal(proposed_content=content, **kwargs)


async def approved(pipeline, content: str = "Haircuts cost $30 on weekdays", **kwargs):
    item = await pipeline.submit(proposal(content, **kwargs))
    await pipeline.approve(item.id, "owner")
    return item


class TestSubmit:
    @pytest.mark.asyncio
    async def test_new_item_is_pending(self, pipeline):
        item = await pipeline.submit(proposal())
        assert item.status == LearningStatus.PENDING
        assert item.seq == 1
        assert (await pipeline.get(item.id)).proposed_content == "Haircuts cost $30 on weekdays"

    @pytest.mark.parametrize("bad", [
        {"shop_id": 0},
        {"content": "   "},
        {"content": "x" * 10001},
        {"confidence_score": 150},
        {"priority": "critical"},
        {"source_type": "rumour"},
    ])
    @pytest.mark.asyncio
    async def test_rejects_invalid_proposal(self, pipeline, bad):
        with pytest.raises(ValidationError):
            await pipeline.submit(proposal(**bad))
        assert await pipeline.list_items(status=None) == []


class TestReview:
    @pytest.mark.asyncio
    async def test_approve(self, pipeline):
        item = await pipeline.submit(proposal())
        status = await pipeline.review(item.id, ReviewDecision.APPROVE, "owner")
        assert status == LearningStatus.APPROVED
        stored = await pipeline.get(item.id)
        assert stored.reviewed_by == "owner"
        assert stored.reviewed_at is not None

    @pytest.mark.asyncio
    async def test_approving_twice_conflicts(self, pipeline):
        item = await approved(pipeline)
        with pytest.raises(ConflictError) as exc:
            await pipeline.approve(item.id, "owner")
        assert exc.value.current == "approved"
        assert exc.value.expected == "pending"

    @pytest.mark.asyncio
    async def test_reject_requires_reason(self, pipeline):
        item = await pipeline.submit(proposal())
        with pytest.raises(ValidationError):
            await pipeline.review(item.id, "reject", "owner")
        assert (await pipeline.get(item.id)).status == LearningStatus.PENDING

    @pytest.mark.asyncio
    async def test_reject_keeps_reason(self, pipeline):
        item = await pipeline.submit(proposal())
        status = await pipeline.review(item.id, "reject", "owner", reason="Outdated price")
        assert status == LearningStatus.REJECTED
        assert (await pipeline.get(item.id)).rejection_reason == "Outdated price"

    @pytest.mark.asyncio
    async def test_rejected_item_cannot_be_approved(self, pipeline):
        item = await pipeline.submit(proposal())
        await pipeline.reject(item.id, "owner", "wrong")
        with pytest.raises(ConflictError):
            await pipeline.approve(item.id, "owner")
        assert (await pipeline.get(item.id)).status == LearningStatus.REJECTED

    @pytest.mark.asyncio
    async def test_unknown_item(self, pipeline):
        with pytest.raises(NotFoundError):
            await pipeline.approve("missing", "owner")

    @pytest.mark.asyncio
    async def test_reviewer_required(self, pipeline):
        item = await pipeline.submit(proposal())
        with pytest.raises(ValidationError):
            await pipeline.approve(item.id, " ")

    @pytest.mark.asyncio
    async def test_concurrent_reviews_have_one_winner(self, pipeline):
        item = await pipeline.submit(proposal())
        results = await asyncio.gather(
            pipeline.approve(item.id, "alice"),
            pipeline.reject(item.id, "bob", "no"),
            return_exceptions=True,
        )
        assert sum(isinstance(r, ConflictError) for r in results) == 1


class TestApply:
    @pytest.mark.asyncio
    async def test_apply_inserts_knowledge(self, pipeline, store):
        item = await approved(pipeline, category="pricing")
        outcome = await pipeline.apply(item.id)

        assert outcome.status == LearningStatus.APPLIED
        assert outcome.action == ResolutionAction.INSERT
        knowledge = await store.get_knowledge(outcome.knowledge_item_id)
        assert knowledge.content == "Haircuts cost $30 on weekdays"
        assert knowledge.category == "pricing"
        assert knowledge.confidence == pytest.approx(0.8)
        assert (await pipeline.get(item.id)).knowledge_item_id == knowledge.id

    @pytest.mark.asyncio
    async def test_reapply_is_noop(self, pipeline, store):
        item = await approved(pipeline)
        first = await pipeline.apply(item.id)
        second = await pipeline.apply(item.id)
        assert second.noop
        assert second.knowledge_item_id == first.knowledge_item_id
        assert len(await store.knowledge_history(first.knowledge_item_id)) == 1

    @pytest.mark.asyncio
    async def test_pending_item_cannot_be_applied(self, pipeline):
        item = await pipeline.submit(proposal())
        with pytest.raises(ConflictError):
            await pipeline.apply(item.id)
        assert (await pipeline.get(item.id)).status == LearningStatus.PENDING

    @pytest.mark.asyncio
    async def test_rejected_item_cannot_be_applied(self, pipeline, store):
        item = await pipeline.submit(proposal())
        await pipeline.reject(item.id, "owner", "Prices changed last month")
        with pytest.raises(ConflictError):
            await pipeline.apply(item.id)
        rejected = await pipeline.get(item.id)
        assert rejected.status == LearningStatus.REJECTED
        assert rejected.knowledge_item_id is None
        assert await store.similar_knowledge([1.0] * 8, shop_id=1) == []

    @pytest.mark.asyncio
    async def test_merge_over_a_newer_version_rolls_back(self, pipeline, store):
        existing = await seed_knowledge(
            store, "We open at 9am", [0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.5]
        )
        item = await approved(pipeline, "We are open from 9am to 6pm")
        build_change = pipeline._resolver.build_change

        async def build_then_lose_race(*args, **kwargs):
            change = await build_change(*args, **kwargs)
            newer = dataclasses.replace(existing, content="We open at 10am", version=2)
            await store.update_knowledge(newer, "merge")
            return change

        pipeline._resolver.build_change = build_then_lose_race
        with pytest.raises(PersistenceError):
            await pipeline.apply(item.id)

        assert (await pipeline.get(item.id)).status == LearningStatus.APPROVED
        current = await store.get_knowledge(existing.id)
        assert (current.version, current.content) == (2, "We open at 10am")

    @pytest.mark.asyncio
    async def test_concurrent_apply_creates_one_item(self, pipeline, store, embedder):
        embedder.delay = 0.02
        item = await approved(pipeline)

        outcomes = await asyncio.gather(pipeline.apply(item.id), pipeline.apply(item.id))

        assert sorted(o.noop for o in outcomes) == [False, True]
        hits = await store.similar_knowledge([1.0] * 8, shop_id=1)
        assert len(hits) == 1

    @pytest.mark.asyncio
    async def test_duplicate_is_skipped(self, pipeline, store):
        existing = await seed_knowledge(store, "Haircuts cost $30 on weekdays")
        item = await approved(pipeline)

        outcome = await pipeline.apply(item.id)

        assert outcome.action == ResolutionAction.SKIP
        assert outcome.knowledge_item_id == existing.id
        assert (await pipeline.get(item.id)).metadata["duplicate_of"] == existing.id

    @pytest.mark.asyncio
    async def test_near_duplicate_merges_with_new_version(self, pipeline, store):
        # cosine with "open" (hours bucket + bias) is about 0.93
        existing = await seed_knowledge(
            store, "We open at 9am", [0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.5]
        )
        item = await approved(pipeline, "We are open from 9am to 6pm")

        outcome = await pipeline.apply(item.id)

        assert outcome.action == ResolutionAction.MERGE
        assert outcome.knowledge_item_id == existing.id
        merged = await store.get_knowledge(existing.id)
        assert merged.version == 2
        assert merged.content == "We are open from 9am to 6pm"
        history = await store.knowledge_history(existing.id)
        assert [v.version for v in history] == [2, 1]
        assert history[1].content == "We open at 9am"

    @pytest.mark.asyncio
    async def test_contradiction_goes_back_to_review(self, pipeline, store):
        existing = await seed_knowledge(
            store, "Haircuts cost $30 on weekdays", [1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0]
        )
        item = await approved(pipeline, "Haircuts cost $35 on weekdays")

        outcome = await pipeline.apply(item.id)

        assert outcome.action == ResolutionAction.FLAG_FOR_REVIEW
        assert outcome.status == LearningStatus.PENDING
        flagged = await pipeline.get(item.id)
        assert flagged.review_cycles == 1
        assert flagged.metadata["conflict_with"] == existing.id
        assert (await store.get_knowledge(existing.id)).version == 1

        await pipeline.approve(item.id, "owner")
        await pipeline.apply(item.id)
        assert (await pipeline.get(item.id)).review_cycles == 2

    @pytest.mark.asyncio
    async def test_audit_trail(self, pipeline):
        item = await approved(pipeline)
        await pipeline.apply(item.id)
        events = await pipeline.audit_log(item.id)
        assert [(e.from_status, e.to_status) for e in events] == [
            (None, LearningStatus.PENDING),
            (LearningStatus.PENDING, LearningStatus.APPROVED),
            (LearningStatus.APPROVED, LearningStatus.APPLIED),
        ]
        assert events[1].actor == "owner"
        assert events[2].details["action"] == "insert"


class TestProcessPending:
    @pytest.mark.asyncio
    async def test_priority_then_insertion_order(self, pipeline):
        low = await approved(pipeline, "Parking is behind the building", priority="low")
        normal = await approved(pipeline, "We accept card payments")
        urgent = await approved(pipeline, "Beard shaves are discontinued", priority="urgent")
        high = await approved(pipeline, "Bookings need a phone number", priority=Priority.HIGH)
        normal_later = await approved(pipeline, "We open at 9am on Saturdays")

        result = await pipeline.process_pending()

        assert [o.item_id for o in result.outcomes] == [
            urgent.id, high.id, normal.id, normal_later.id, low.id,
        ]
        assert result.applied_count == 5
        assert result.failures == []

    @pytest.mark.asyncio
    async def test_only_approved_items(self, pipeline):
        await pipeline.submit(proposal("We accept card payments"))
        item = await approved(pipeline)
        result = await pipeline.process_pending()
        assert [o.item_id for o in result.outcomes] == [item.id]

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_batch(self, pipeline, embedder):
        embedder.fail_texts.add("Unembeddable knowledge")
        bad = await approved(pipeline, "Unembeddable knowledge", priority="urgent")
        good = await approved(pipeline, "We accept card payments")

        result = await pipeline.process_pending()

        assert result.applied_count == 1
        assert [f.id for f in result.failures] == [bad.id]
        assert result.failures[0].retry_eligible is False
        failed = await pipeline.get(bad.id)
        assert failed.status == LearningStatus.APPROVED
        assert failed.metadata["apply_attempts"] == 1
        assert "last_error" in failed.metadata
        assert (await pipeline.get(good.id)).status == LearningStatus.APPLIED

        # not retried automatically
        assert (await pipeline.process_pending()).outcomes == []

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried_next_batch(self, pipeline, embedder):
        item = await approved(pipeline)
        embedder.transient_failures = 3

        first = await pipeline.process_pending()
        assert first.failures[0].retry_eligible is True

        second = await pipeline.process_pending()
        assert second.applied_count == 1
        assert (await pipeline.get(item.id)).status == LearningStatus.APPLIED

    @pytest.mark.asyncio
    async def test_exhausted_attempts_stop_automatic_retries(self, pipeline, embedder):
        item = await approved(pipeline)
        embedder.transient_failures = 100

        eligible = []
        for _ in range(3):
            [failure] = (await pipeline.process_pending()).failures
            stored = await pipeline.get(item.id)
            assert stored.metadata["retry_eligible"] is failure.retry_eligible
            eligible.append(failure.retry_eligible)

        assert eligible == [True, True, False]
        assert (await pipeline.process_pending()).outcomes == []

    @pytest.mark.asyncio
    async def test_shop_filter_and_limit(self, pipeline):
        await approved(pipeline, "We accept card payments", shop_id=2)
        mine = await approved(pipeline, "Parking is behind the building")
        await approved(pipeline, "We open at 9am on Saturdays")

        result = await pipeline.process_pending(limit=1, shop_id=1)

        assert [o.item_id for o in result.outcomes] == [mine.id]

    @pytest.mark.asyncio
    async def test_periodic_drain(self, pipeline):
        item = await approved(pipeline)
        await pipeline.start_drain(interval=0.05)
        try:
            for _ in range(50):
                if (await pipeline.get(item.id)).status == LearningStatus.APPLIED:
                    break
                await asyncio.sleep(0.02)
        finally:
            await pipeline.stop_drain()
        assert (await pipeline.get(item.id)).status == LearningStatus.APPLIED


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_items_by_priority(self, pipeline):
        normal = await pipeline.submit(proposal("We accept card payments"))
        urgent = await pipeline.submit(proposal("Beard shaves are discontinued", priority="urgent"))
        items = await pipeline.list_items(status="pending")
        assert [i.id for i in items] == [urgent.id, normal.id]

    @pytest.mark.asyncio
    async def test_list_items_validates_limit(self, pipeline):
        with pytest.raises(ValidationError):
            await pipeline.list_items(limit=0)

    @pytest.mark.asyncio
    async def test_metrics(self, pipeline):
        item = await approved(pipeline, category="pricing")
        await pipeline.apply(item.id)
        rejected = await pipeline.submit(proposal("We accept card payments"))
        await pipeline.reject(rejected.id, "owner", "not true")
        await pipeline.submit(proposal("Parking is behind the building"))

        metrics = await pipeline.metrics()

        assert metrics["pending"] == 1
        assert metrics["approved"] == 0
        assert metrics["rejected"] == 1
        assert metrics["applied"] == 1
        assert metrics["applied_today"] == 1
        assert metrics["conflict_rate"] == 0.0
        assert metrics["avg_apply_ms"] is not None
        assert metrics["top_categories"] == [{"category": "pricing", "count": 1}]
