"""Tests for folio.filters — option compilation and the [N DAYS] macro."""

from datetime import UTC, datetime, timedelta

import pytest

from folio import filters
from folio.filters import (
    ADVANCED,
    FULLTEXT,
    FilterOptions,
    FilterPatch,
    compile_filter,
    effective_limit,
    expand_date_macros,
    filter_clauses,
    format_timestamp,
    quote,
    sanitize_search,
    split_limit,
)

NOW = datetime(2024, 3, 10, 12, 0, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# General mode
# ---------------------------------------------------------------------------


class TestGeneralSearch:
    def test_fuzzy_pattern_over_four_fields(self):
        out = compile_filter(FilterOptions(search="foo bar"))
        assert out == (
            '(title LIKE[c] "*foo*bar*" OR authors LIKE[c] "*foo*bar*" '
            'OR publication LIKE[c] "*foo*bar*" OR note LIKE[c] "*foo*bar*")'
        )

    def test_newlines_and_whitespace_collapsed(self):
        out = compile_filter(FilterOptions(search="  foo\n\n bar  "))
        assert '"*foo*bar*"' in out

    def test_flagged_and_limit(self):
        out = compile_filter(FilterOptions(search="foo bar", flagged=True, limit=10))
        assert out.endswith(" AND (flag == true) LIMIT(10)")
        assert out.startswith("(title LIKE[c]")

    def test_quotes_escaped(self):
        out = compile_filter(FilterOptions(search='say "hi"'))
        assert r'"*say*\"hi\"*"' in out


class TestEmptyAndIndependentClauses:
    def test_empty_options_compile_to_empty_string(self):
        assert compile_filter(FilterOptions()) == ""

    def test_whitespace_only_search_is_empty(self):
        assert compile_filter(FilterOptions(search=" \n ")) == ""

    def test_limit_only_has_no_leading_space(self):
        assert compile_filter(FilterOptions(limit=5)) == "LIMIT(5)"

    def test_tag_and_folder(self):
        out = compile_filter(FilterOptions(tag="ml", folder="thesis"))
        assert out == '(ANY tags.name == "ml") AND (ANY folders.name == "thesis")'

    def test_str_compiles(self):
        assert str(FilterOptions(flagged=True)) == "(flag == true)"


class TestFulltext:
    def test_fulltext_clause(self):
        out = compile_filter(FilterOptions(search="neural nets", search_mode=FULLTEXT))
        assert out == '(fulltext CONTAINS[c] "neural nets")'

    def test_general_fields_ignored(self):
        out = compile_filter(FilterOptions(search="x", search_mode=FULLTEXT))
        assert "title" not in out


# ---------------------------------------------------------------------------
# Advanced mode and date macros
# ---------------------------------------------------------------------------


class TestDateMacro:
    def test_operator_inverted_and_date_substituted(self):
        out = compile_filter(
            FilterOptions(search="addTime > [3 DAYS]", search_mode=ADVANCED), now=NOW
        )
        assert out == "(addTime < 2024-03-07@12:00:00)"

    @pytest.mark.parametrize(
        "op, inverted",
        [("<", ">"), (">", "<"), ("<=", ">="), (">=", "<=")],
    )
    def test_each_operator(self, op, inverted):
        out = expand_date_macros(f"addTime {op} [1 DAYS]", now=NOW)
        assert out == f"addTime {inverted} 2024-03-09@12:00:00"

    def test_each_occurrence_uses_its_own_n(self):
        out = expand_date_macros("addTime > [3 DAYS] AND addTime < [10 DAYS]", now=NOW)
        assert out == "addTime < 2024-03-07@12:00:00 AND addTime > 2024-02-29@12:00:00"

    def test_mixed_operators_inverted_per_match(self):
        out = expand_date_macros('addTime >= [2 DAYS] AND title < "m"', now=NOW)
        assert out == 'addTime <= 2024-03-08@12:00:00 AND title < "m"'

    def test_macro_without_operator_only_substituted(self):
        assert expand_date_macros("[1 DAYS]", now=NOW) == "2024-03-09@12:00:00"

    def test_compile_twice_is_idempotent(self):
        options = FilterOptions(search="addTime > [3 DAYS]", search_mode=ADVANCED)
        assert compile_filter(options, now=NOW) == compile_filter(options, now=NOW)
        assert options.search == "addTime > [3 DAYS]"

    def test_advanced_passes_through(self):
        out = compile_filter(FilterOptions(search='title == "x"', search_mode=ADVANCED))
        assert out == '(title == "x")'

    def test_or_stays_inside_its_clause(self):
        options = FilterOptions(search='title == "A" OR title == "B"', search_mode=ADVANCED, flagged=True)
        assert compile_filter(options) == '(title == "A" OR title == "B") AND (flag == true)'

    def test_typed_limit_moves_to_the_end(self):
        options = FilterOptions(search='title == "A" limit(3)', search_mode=ADVANCED, tag="ml")
        assert compile_filter(options) == '(title == "A") AND (ANY tags.name == "ml") LIMIT(3)'

    def test_typed_and_option_limits_take_the_smaller(self):
        typed = FilterOptions(search="flag == true LIMIT(3)", search_mode=ADVANCED, limit=10)
        assert compile_filter(typed) == "(flag == true) LIMIT(3)"
        assert effective_limit(typed.apply(FilterPatch(limit=2))) == 2

    def test_limit_only_search(self):
        out = compile_filter(FilterOptions(search="LIMIT(4)", search_mode=ADVANCED))
        assert out == "LIMIT(4)"

    def test_limit_inside_string_is_kept(self):
        assert split_limit('title == "LIMIT(2)"') == ('title == "LIMIT(2)"', 0)


class TestMacroClock:
    def test_each_compile_reads_the_clock(self, monkeypatch):
        ticks = iter([NOW, NOW + timedelta(days=2)])

        class SteppingClock(datetime):
            @classmethod
            def now(cls, tz=None):
                return next(ticks)

        monkeypatch.setattr(filters, "datetime", SteppingClock)
        options = FilterOptions(search="addTime > [3 DAYS]", search_mode=ADVANCED)
        first = compile_filter(options)
        second = compile_filter(options)
        assert first == "(addTime < 2024-03-07@12:00:00)"
        assert second == "(addTime < 2024-03-09@12:00:00)"


# ---------------------------------------------------------------------------
# Options and helpers
# ---------------------------------------------------------------------------


class TestFilterOptions:
    def test_invalid_mode(self):
        with pytest.raises(ValueError, match="search_mode"):
            FilterOptions(search_mode="regex")

    def test_apply_patch_only_sets_given_fields(self):
        base = FilterOptions(search="a", tag="t", limit=3)
        patched = base.apply(FilterPatch(search="b"))
        assert patched == FilterOptions(search="b", tag="t", limit=3)
        assert base.search == "a"

    def test_apply_patch_can_clear(self):
        patched = FilterOptions(flagged=True, limit=3).apply(FilterPatch(flagged=False, limit=0))
        assert compile_filter(patched) == ""

    def test_clauses_recomputed(self):
        options = FilterOptions(tag="a")
        assert filter_clauses(options.apply(FilterPatch(tag="b"))) == ['(ANY tags.name == "b")']


class TestHelpers:
    def test_sanitize(self):
        assert sanitize_search("a\r\nb   c ") == "a b c"

    def test_quote_backslash(self):
        assert quote("a\\b") == '"a\\\\b"'

    def test_format_timestamp_converts_to_utc(self):
        from datetime import timedelta, timezone

        local = datetime(2024, 1, 1, 2, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        assert format_timestamp(local) == "2024-01-01@00:00:00"
