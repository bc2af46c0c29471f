"""Tests for knowledge conflict detection and resolution."""

import dataclasses
import json

import pytest

from handoff.errors import NotFoundError, PersistenceError
from handoff.knowledge import (
    ConflictConfig,
    KnowledgeCandidate,
    KnowledgeConflictResolver,
    create_llm_contradiction_check,
    key_terms,
    lexical_contradiction,
)
from handoff.models import ConflictMatch, ConflictRelation, ResolutionAction

from conftest import ScriptedLLM, keyword_vector, seed_knowledge


def vec(*values: float) -> list[float]:
    return list(values) + [0.0] * (8 - len(values))


def candidate(content: str, embedding: list[float], **kwargs) -> KnowledgeCandidate:
    kwargs.setdefault("shop_id", 1)
    return KnowledgeCandidate(content=content, embedding=embedding, **kwargs)


class TestLexicalContradiction:
    def test_negation_asymmetry(self):
        assert lexical_contradiction("We are open on Sundays", "We are not open on Sundays")

    def test_antonyms(self):
        assert lexical_contradiction("Parking is free for customers", "Parking is paid for customers")

    def test_different_figures(self):
        assert lexical_contradiction("A haircut costs $30", "A haircut costs $35")

    def test_consistent_statements(self):
        assert not lexical_contradiction("A haircut costs $30", "A haircut costs $30 for students too")

    def test_key_terms_skip_stopwords_and_negations(self):
        assert key_terms("We are not open on the weekend") == {"open", "weekend"}


class TestDetectConflicts:
    @pytest.mark.asyncio
    async def test_identical_vector_is_duplicate(self, store, resolver):
        existing = await seed_knowledge(store, "Haircuts cost $30 on weekdays", vec(1, 1))
        resolution = await resolver.resolve(candidate("Haircuts cost $30 on weekdays", vec(1, 1)))
        assert resolution.action == ResolutionAction.SKIP
        assert resolution.target_id == existing.id
        assert resolution.matches[0].relation == ConflictRelation.DUPLICATE

    @pytest.mark.asyncio
    async def test_close_vector_is_near_duplicate(self, store, resolver):
        existing = await seed_knowledge(store, "We open at 9am", vec(1.0, 0.0))
        # cosine 0.894
        resolution = await resolver.resolve(candidate("We open at 9am every day", vec(1.0, 0.5)))
        assert resolution.action == ResolutionAction.MERGE
        assert resolution.target_id == existing.id

    @pytest.mark.asyncio
    async def test_related_statement_with_new_figure_is_flagged(self, store, resolver):
        existing = await seed_knowledge(store, "Haircuts cost $30 on weekdays", vec(1.0, 0.0))
        # cosine 0.707: below the near-duplicate band
        resolution = await resolver.resolve(candidate("Haircuts cost $35 on weekdays", vec(1.0, 1.0)))
        assert resolution.action == ResolutionAction.FLAG_FOR_REVIEW
        assert resolution.target_id == existing.id

    @pytest.mark.asyncio
    async def test_unrelated_knowledge_inserts(self, store, resolver):
        await seed_knowledge(store, "Parking is behind the building", vec(0, 0, 0, 0, 0, 1))
        resolution = await resolver.resolve(candidate("Beard trims take twenty minutes", vec(0, 0, 0, 1, 1)))
        assert resolution.action == ResolutionAction.INSERT
        assert resolution.target_id is None

    @pytest.mark.asyncio
    async def test_empty_knowledge_base_inserts(self, resolver):
        resolution = await resolver.resolve(candidate("We accept card payments", vec(1)))
        assert resolution.action == ResolutionAction.INSERT
        assert resolution.matches == []

    @pytest.mark.asyncio
    async def test_scoped_to_shop_and_category(self, store, resolver):
        await seed_knowledge(store, "We open at 9am", vec(1), shop_id=2)
        await seed_knowledge(store, "We open at 9am", vec(1), category="hours")
        assert (await resolver.resolve(candidate("We open at 9am", vec(1), category="pricing"))).matches == []
        assert len((await resolver.resolve(candidate("We open at 9am", vec(1), category="hours"))).matches) == 1

    @pytest.mark.asyncio
    async def test_records_detection_latency(self, resolver, monitor):
        await resolver.resolve(candidate("We open at 9am", vec(1)))
        assert monitor.stats("conflict_detection").count == 1


class TestDecide:
    def test_strongest_relation_wins(self, resolver):
        matches = [
            ConflictMatch("a", 0.7, ConflictRelation.CONTRADICTION_CANDIDATE),
            ConflictMatch("b", 0.85, ConflictRelation.NEAR_DUPLICATE),
            ConflictMatch("c", 0.82, ConflictRelation.NEAR_DUPLICATE),
        ]
        resolution = resolver.decide(matches)
        assert resolution.action == ResolutionAction.MERGE
        assert resolution.target_id == "b"

    def test_only_unrelated_inserts(self, resolver):
        resolution = resolver.decide([ConflictMatch("a", 0.3, ConflictRelation.UNRELATED)])
        assert resolution.action == ResolutionAction.INSERT


class TestContradictionCheck:
    @pytest.mark.asyncio
    async def test_llm_check_overrides_lexical(self, store, resolver):
        await seed_knowledge(store, "Haircuts cost $30 on weekdays", vec(1.0, 0.0))
        llm = ScriptedLLM(json.dumps({"contradicts": False, "confidence": 0.9}))
        resolver.set_contradiction_check(create_llm_contradiction_check(llm))

        resolution = await resolver.resolve(candidate("Haircuts cost $35 on weekdays", vec(1.0, 1.0)))

        assert resolution.action == ResolutionAction.INSERT
        assert len(llm.prompts) == 1

    @pytest.mark.asyncio
    async def test_low_confidence_verdict_is_no(self):
        check = create_llm_contradiction_check(
            ScriptedLLM('{"contradicts": true, "confidence": 0.4}'), min_confidence=0.7
        )
        assert await check("a", "b") is False

    @pytest.mark.asyncio
    async def test_failing_check_falls_back_to_lexical(self, store, resolver):
        await seed_knowledge(store, "Haircuts cost $30 on weekdays", vec(1.0, 0.0))

        async def broken(a, b):
            raise RuntimeError("llm down")

        resolver.set_contradiction_check(broken)
        resolution = await resolver.resolve(candidate("Haircuts cost $35 on weekdays", vec(1.0, 1.0)))
        assert resolution.action == ResolutionAction.FLAG_FOR_REVIEW


class TestBuildChange:
    @pytest.mark.asyncio
    async def test_replace_merge_bumps_version(self, store, resolver):
        existing = await seed_knowledge(store, "We open at 9am", vec(1.0, 0.0))
        new = candidate("We open at 9am every day", vec(1.0, 0.5))
        resolution = await resolver.resolve(new)

        change = await resolver.build_change(resolution, new, source="test", confidence=0.9)

        assert change.action == ResolutionAction.MERGE
        assert change.item.id == existing.id
        assert change.item.version == 2
        assert change.item.content == "We open at 9am every day"
        assert change.item.metadata["merged_from_version"] == 1

    @pytest.mark.asyncio
    async def test_concatenate_merge_reembeds(self, store, monitor):
        resolver = KnowledgeConflictResolver(store, ConflictConfig(merge_strategy="concatenate"), monitor)
        await seed_knowledge(store, "We open at 9am", vec(1.0, 0.0))
        new = candidate("Closed on public holidays", vec(1.0, 0.5))
        embedded = []

        async def embed(text):
            embedded.append(text)
            return vec(0, 1)

        change = await resolver.build_change(await resolver.resolve(new), new, source="test", embed=embed)

        assert change.item.content == "We open at 9am\n\nAdditionally: Closed on public holidays"
        assert change.item.embedding == vec(0, 1)
        assert embedded == [change.item.content]

    @pytest.mark.asyncio
    async def test_skip_points_at_duplicate(self, store, resolver):
        existing = await seed_knowledge(store, "We open at 9am", vec(1))
        new = candidate("We open at 9am", vec(1))
        change = await resolver.build_change(await resolver.resolve(new), new, source="test")
        assert change.item is None
        assert change.knowledge_item_id == existing.id
        assert change.details == {"duplicate_of": existing.id}

    @pytest.mark.asyncio
    async def test_insert_builds_new_item(self, resolver):
        new = candidate("We accept card payments", vec(0, 0, 0, 0, 0, 0, 1), category="payment")
        change = await resolver.build_change(await resolver.resolve(new), new, source="test", confidence=0.5)
        assert change.action == ResolutionAction.INSERT
        assert change.item.category == "payment"
        assert change.item.version == 1


class TestRestoreVersion:
    @pytest.mark.asyncio
    async def test_restore_writes_a_new_version(self, resolver, store, embeddings):
        original = await seed_knowledge(store, "We open at 9am")
        newer = dataclasses.replace(
            original, content="Haircuts cost $30", embedding=keyword_vector("Haircuts cost $30"), version=2,
        )
        await store.update_knowledge(newer, "merge")

        restored = await resolver.restore_version(original.id, 1, embeddings.embed, "owner")

        assert restored.version == 3
        assert restored.content == "We open at 9am"
        assert restored.embedding == keyword_vector("We open at 9am")
        assert restored.metadata["restored_from_version"] == 1
        history = await store.knowledge_history(original.id)
        assert [(v.version, v.change_type) for v in history] == [
            (3, "restore"), (2, "merge"), (1, "insert"),
        ]
        [hit] = await store.similar_knowledge(keyword_vector("opening hours"), shop_id=1)
        assert hit.item.content == "We open at 9am"

    @pytest.mark.asyncio
    async def test_unknown_version(self, resolver, store, embeddings):
        original = await seed_knowledge(store, "We open at 9am")
        with pytest.raises(NotFoundError):
            await resolver.restore_version(original.id, 5, embeddings.embed)
        assert (await store.get_knowledge(original.id)).version == 1

    @pytest.mark.asyncio
    async def test_unknown_item(self, resolver, embeddings):
        with pytest.raises(NotFoundError):
            await resolver.restore_version("missing", 1, embeddings.embed)

    @pytest.mark.asyncio
    async def test_concurrent_change_wins(self, resolver, store, embeddings):
        original = await seed_knowledge(store, "We open at 9am")
        await store.update_knowledge(dataclasses.replace(original, content="We open at 10am", version=2), "merge")

        async def embed_during_a_merge(text):
            current = await store.get_knowledge(original.id)
            await store.update_knowledge(
                dataclasses.replace(current, content="We open at 11am", version=3), "merge"
            )
            return await embeddings.embed(text)

        with pytest.raises(PersistenceError):
            await resolver.restore_version(original.id, 1, embed_during_a_merge)
        assert (await store.get_knowledge(original.id)).content == "We open at 11am"
