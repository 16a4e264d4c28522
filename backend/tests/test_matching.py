from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from app.domain import MarketSource, MatchConfig, NormalizationRule
from app.services import matching
from app.services.matching import (
    BASE_NORMALIZATIONS,
    MATCH_CONFIG_CACHE_KEY,
    build_match_config,
    extract_keywords,
    load_match_config,
    match_markets,
    similarity,
    tokenize,
)

EMPTY_CONFIG = MatchConfig(normalizations=(), key_terms=())


def test_tokenize_strips_punctuation_short_words_and_stopwords():
    tokens = tokenize("Will the Fed cut (interest) rates before July?")

    assert tokens == ["interest", "rates", "july"]


def test_build_match_config_ranks_key_terms_by_frequency_then_name():
    questions = (
        ["bitcoin price above target"] * 6
        + ["ethereum price above target"] * 5
        + ["bitcoin ethereum"] * 1
    )

    config = build_match_config(questions)

    # price/target 11 each, bitcoin 7, ethereum 6; "above" is a stop word
    assert config.key_terms == ("price", "target", "bitcoin", "ethereum")


def test_build_match_config_caps_key_terms():
    questions = [" ".join(f"term{index:02d}" for index in range(40))] * 5

    config = build_match_config(questions)

    assert len(config.key_terms) == 30
    assert config.key_terms[0] == "term00"


def test_build_match_config_requires_five_occurrences_for_key_terms():
    config = build_match_config(["senate control"] * 4)

    assert config.key_terms == ()


def test_build_match_config_derives_plural_rules_after_base_rules():
    questions = ["tariffs imposed"] * 3 + ["tariff imposed"] + ["senators vote"] * 3

    config = build_match_config(questions)

    assert config.normalizations[: len(BASE_NORMALIZATIONS)] == BASE_NORMALIZATIONS
    derived = config.normalizations[len(BASE_NORMALIZATIONS) :]
    # "senators" has no singular form in the corpus
    assert derived == (NormalizationRule("tariffs", "tariff"),)


def test_build_match_config_never_overrides_base_rules():
    questions = ["elections coming"] * 4 + ["election coming"] * 2

    config = build_match_config(questions)

    terms = [rule.term for rule in config.normalizations]
    assert terms.count("elections") == 1
    assert NormalizationRule("elections", "election") in BASE_NORMALIZATIONS


def test_build_match_config_skips_rare_or_short_plurals():
    questions = ["tariffs imposed", "tariffs imposed", "tariff imposed", "cats cat"] * 1

    config = build_match_config(questions)

    assert config.normalizations == BASE_NORMALIZATIONS


def test_normalizations_apply_whole_words_case_insensitively():
    config = MatchConfig(normalizations=BASE_NORMALIZATIONS, key_terms=())

    keywords = extract_keywords("GOP wins the BTC debate; Bitcoiners cheer", config)

    assert "republican" in keywords
    assert "bitcoin" in keywords
    assert "bitcoiners" in keywords


def test_similarity_is_one_for_identical_questions():
    question = "Will Bitcoin close above $100k in 2025?"

    assert similarity(question, question, EMPTY_CONFIG) == 1.0


def test_similarity_is_symmetric():
    config = build_match_config(
        ["Will Bitcoin hit 100k?", "Bitcoin above 90k in March?", "Bitcoin ETF approved?"] * 2
    )
    first = "Will Bitcoin hit $100k before March?"
    second = "Bitcoin above $100k in March 2025"

    assert similarity(first, second, config) == similarity(second, first, config)


def test_similarity_is_zero_when_a_side_has_no_keywords():
    assert similarity("Will it be?", "Bitcoin price target", EMPTY_CONFIG) == 0.0


def test_similarity_two_of_six_keywords_is_discarded_below_threshold():
    # 2 shared, 4 unique per side: Jaccard 2/10
    first = "alpha bravo charlie delta echo foxtrot"
    second = "alpha bravo golf hotel india juliet"

    score = similarity(first, second, EMPTY_CONFIG)

    assert score == pytest.approx(0.2)
    assert score < 0.4


def test_similarity_key_term_boost_is_capped():
    config = MatchConfig(normalizations=(), key_terms=("alpha", "bravo", "charlie"))
    first = "alpha bravo charlie delta echo foxtrot golf hotel"
    second = "alpha bravo charlie india juliet kilo lima mike"

    score = similarity(first, second, config)

    # Jaccard 3/13 plus a capped 0.30 boost instead of 0.45
    assert score == pytest.approx(3 / 13 + 0.30)


def test_similarity_never_exceeds_one():
    config = MatchConfig(normalizations=(), key_terms=("bitcoin", "price"))

    assert similarity("bitcoin price", "bitcoin price", config) == 1.0


def test_match_markets_orders_arbitrage_first_then_similarity(market_factory):
    poly = [
        market_factory(MarketSource.POLYMARKET, "p1", "Bitcoin above 100k by March", yes=60, no=40),
        market_factory(MarketSource.POLYMARKET, "p2", "Ethereum above 5k by March", yes=50, no=50),
    ]
    kalshi = [
        market_factory(MarketSource.KALSHI, "k1", "Bitcoin above 100k by March", yes=30, no=70),
        market_factory(MarketSource.KALSHI, "k2", "Ethereum above 5k by March 2025", yes=50, no=50),
    ]

    pairs = match_markets(poly, kalshi, EMPTY_CONFIG, min_similarity=0.4)

    assert [pair.id for pair in pairs] == ["match_poly_p1_kalshi_k1", "match_poly_p2_kalshi_k2"]
    first = pairs[0]
    assert first.similarity == 1.0
    assert first.price_difference == 30
    assert first.has_arbitrage is True
    assert pairs[1].has_arbitrage is False


def test_match_markets_is_deterministic(market_factory):
    poly = [
        market_factory(MarketSource.POLYMARKET, f"p{index}", f"Team{index} wins championship final", yes=40, no=55)
        for index in range(5)
    ]
    kalshi = [
        market_factory(MarketSource.KALSHI, f"k{index}", f"Team{index} wins championship final game", yes=42, no=52)
        for index in range(5)
    ]
    config = build_match_config([market.question for market in poly + kalshi])

    assert match_markets(poly, kalshi, config) == match_markets(poly, kalshi, config)


def test_load_match_config_reads_storage_once_per_ttl(cache):
    repository = MagicMock()
    repository.list_active_questions.return_value = ["Bitcoin price"] * 5

    first = load_match_config(repository, cache=cache, ttl_seconds=600)
    second = load_match_config(repository, cache=cache, ttl_seconds=600)

    assert first is second
    assert first.key_terms == ("bitcoin", "price")
    repository.list_active_questions.assert_called_once()
    assert cache.get(MATCH_CONFIG_CACHE_KEY) is first


def test_load_match_config_propagates_storage_failures(cache):
    repository = MagicMock()
    repository.list_active_questions.side_effect = RuntimeError("database down")

    with pytest.raises(RuntimeError):
        load_match_config(repository, cache=cache, ttl_seconds=600)
    assert cache.get(matching.MATCH_CONFIG_CACHE_KEY) is None
