"""
Tests for the query strategy plan.
"""

from labelscan.core.queries import (
    QueryStrategy,
    build_queries,
    query_key,
    shorten_title,
)


class TestShortenTitle:
    """Tests for shorten_title."""

    def test_short_title_returns_empty(self):
        assert shorten_title("Primal Kitchen Buffalo Sauce") == ""

    def test_long_title_keeps_first_four_words(self):
        title = "Primal Kitchen Buffalo Sauce Made With Avocado Oil 8.5 oz"
        assert shorten_title(title) == "Primal Kitchen Buffalo Sauce"

    def test_collapses_whitespace(self):
        assert shorten_title("  One   Two Three  Four   Five ") == "One Two Three Four"


class TestBuildQueries:
    """Tests for build_queries."""

    def test_cold_start_only_barcode_strategies(self):
        plan = build_queries("070662230015")

        assert [q.strategy for q in plan] == [
            QueryStrategy.BARCODE_INGREDIENTS,
            QueryStrategy.BARCODE_INGREDIENTS_LIST,
            QueryStrategy.BARCODE_FOOD_PRODUCT,
        ]
        assert plan[0].text == "070662230015 ingredients"

    def test_title_strategies_follow_barcode_strategies(self):
        plan = build_queries("070662230015", known_title="Acme Peanut Butter")
        texts = [q.text for q in plan]

        assert texts[:3] == [
            "070662230015 ingredients",
            "070662230015 ingredients list",
            "070662230015 food product",
        ]
        assert "Acme Peanut Butter" in texts
        assert "Acme Peanut Butter ingredients" in texts
        assert "Acme Peanut Butter grocery" in texts

    def test_short_title_strategies_need_a_long_title(self):
        short = build_queries("1234567890123", known_title="Acme Peanut Butter")
        assert not any(q.strategy.requires_short_title for q in short)

        long = build_queries("1234567890123", known_title="Acme Crunchy Peanut Butter Family Size")
        texts = [q.text for q in long]
        assert "Acme Crunchy Peanut Butter ingredients" in texts
        assert "Acme Crunchy Peanut Butter nutrition" in texts

    def test_issued_queries_are_skipped_case_insensitively(self):
        issued = {"070662230015 INGREDIENTS", "070662230015   ingredients list"}
        plan = build_queries("070662230015", issued=issued)

        assert [q.text for q in plan] == ["070662230015 food product"]

    def test_plan_has_no_duplicate_texts(self):
        plan = build_queries("12345678", known_title="Acme Crunchy Peanut Butter Family Size")
        keys = [query_key(q.text) for q in plan]

        assert len(keys) == len(set(keys))

    def test_exhausted_plan_is_empty(self):
        plan = build_queries("12345678")
        issued = {q.text for q in plan}

        assert build_queries("12345678", issued=issued) == []


class TestQueryStrategy:
    """Tests for QueryStrategy metadata."""

    def test_requires_title(self):
        assert not QueryStrategy.BARCODE_INGREDIENTS.requires_title
        assert QueryStrategy.TITLE_NUTRITION.requires_title
        assert QueryStrategy.SHORT_TITLE_NUTRITION.requires_title

    def test_every_strategy_has_a_template(self):
        for strategy in QueryStrategy:
            assert strategy.template
