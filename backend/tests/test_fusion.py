"""
Unit tests for score normalization and fusion.
"""
import pytest
from taskmail.db.models import EntityType
from taskmail.retrieval.fusion import (
    collect_best,
    fuse_weighted_sum,
    normalize_lexical,
    rank_results,
)
from taskmail.retrieval.lexical_index import LexicalHit
from taskmail.retrieval.results import SearchResult

EMAIL = EntityType.EMAIL
TASK = EntityType.TASK


def _result(entity_id, score, entity_type=EMAIL):
    return SearchResult(
        entity_id=entity_id, entity_type=entity_type, score=score, match_kind="lexical"
    )


class TestNormalizeLexical:
    def test_fulltext_band(self):
        assert normalize_lexical(LexicalHit(entity_id=1, rank=0.0, kind="fulltext")) == 0.5
        assert normalize_lexical(
            LexicalHit(entity_id=1, rank=0.5, kind="fulltext")
        ) == pytest.approx(0.75)
        assert normalize_lexical(LexicalHit(entity_id=1, rank=1.0, kind="fulltext")) < 1.0

    def test_trigram_scaled_by_fuzzy_weight(self):
        hit = LexicalHit(entity_id=1, rank=0.8, kind="trigram")

        assert normalize_lexical(hit) == pytest.approx(0.4)
        assert normalize_lexical(hit, fuzzy_weight=0.25) == pytest.approx(0.2)

    def test_fuzzy_never_outranks_fulltext(self):
        best_fuzzy = normalize_lexical(LexicalHit(entity_id=1, rank=1.0, kind="trigram"))
        worst_fulltext = normalize_lexical(LexicalHit(entity_id=2, rank=0.0, kind="fulltext"))

        assert best_fuzzy <= worst_fulltext


class TestFuseWeightedSum:
    def test_match_kinds(self):
        fused = fuse_weighted_sum(
            {(1, EMAIL): 0.8, (2, EMAIL): 0.6},
            {(1, EMAIL): 0.5, (3, TASK): 0.9},
        )
        by_key = {r.key: r for r in fused}

        assert by_key[(1, EMAIL)].match_kind == "hybrid"
        assert by_key[(1, EMAIL)].score == pytest.approx(0.7 * 0.8 + 0.3 * 0.5)
        assert by_key[(2, EMAIL)].match_kind == "lexical"
        assert by_key[(2, EMAIL)].score == 0.6
        assert by_key[(3, TASK)].match_kind == "semantic"
        assert by_key[(3, TASK)].semantic_score == 0.9
        assert len(fused) == 3

    def test_same_id_different_types_are_distinct(self):
        fused = fuse_weighted_sum({(1, EMAIL): 0.7}, {(1, TASK): 0.7})

        assert sorted(r.match_kind for r in fused) == ["lexical", "semantic"]

    def test_component_scores_kept(self):
        (result,) = fuse_weighted_sum({(1, EMAIL): 0.6}, {(1, EMAIL): 0.2})

        assert result.lexical_score == 0.6
        assert result.semantic_score == 0.2

    def test_lexical_improvement_never_lowers_rank(self):
        """Raising an entity's lexical score, all else fixed, never drops its position."""
        semantic = {(1, EMAIL): 0.9, (2, EMAIL): 0.4, (3, EMAIL): 0.7}
        previous_position = None
        for lexical_score in (0.0, 0.3, 0.55, 0.75, 0.95):
            lexical = {(2, EMAIL): lexical_score, (3, EMAIL): 0.6}
            ranked = rank_results(fuse_weighted_sum(lexical, semantic), 10)
            position = [r.entity_id for r in ranked].index(2)
            if previous_position is not None:
                assert position <= previous_position
            previous_position = position

    @pytest.mark.parametrize("weights", [(0.7, 0.3), (0.6, 0.4), (0.9, 0.1)])
    def test_hybrid_score_non_decreasing_in_both_signals(self, weights):
        lexical_weight, semantic_weight = weights
        grid = [0.0, 0.1, 0.25, 0.5, 0.5, 0.75, 0.9, 0.999999, 1.0]

        def score(lex, sem):
            (result,) = fuse_weighted_sum(
                {(1, EMAIL): lex},
                {(1, EMAIL): sem},
                lexical_weight=lexical_weight,
                semantic_weight=semantic_weight,
            )
            assert result.match_kind == "hybrid"
            return result.score

        for fixed in grid:
            along_semantic = [score(fixed, sem) for sem in grid]
            along_lexical = [score(lex, fixed) for lex in grid]

            assert along_semantic == sorted(along_semantic)
            assert along_lexical == sorted(along_lexical)


class TestRankResults:
    def test_orders_by_score_then_id_then_type(self):
        ranked = rank_results(
            [
                _result(5, 0.5),
                _result(2, 0.9),
                _result(1, 0.5, TASK),
                _result(1, 0.5, EMAIL),
            ],
            10,
        )

        assert [(r.entity_id, r.entity_type) for r in ranked] == [
            (2, EMAIL),
            (1, EMAIL),
            (1, TASK),
            (5, EMAIL),
        ]

    def test_truncates(self):
        ranked = rank_results([_result(i, i / 10) for i in range(1, 6)], 2)

        assert [r.entity_id for r in ranked] == [5, 4]

    def test_zero_limit(self):
        assert rank_results([_result(1, 0.5)], 0) == []


class TestCollectBest:
    def test_keeps_highest_score(self):
        best = collect_best([((1, EMAIL), 0.2), ((1, EMAIL), 0.6), ((2, TASK), 0.1)])

        assert best == {(1, EMAIL): 0.6, (2, TASK): 0.1}
