"""Cross-venue question matching driven by a corpus-derived keyword model."""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable, Sequence

from loguru import logger

from app.core.cache import TTLCache, market_data_cache
from app.core.config import settings
from app.domain import MatchConfig, MatchedMarketPair, NormalizationRule, UnifiedMarket
from app.repositories import MarketRepository

from .arbitrage import detect_arbitrage

MATCH_CONFIG_CACHE_KEY = "matched-markets:dynamic-config"

KEY_TERM_MIN_FREQUENCY = 5
KEY_TERM_LIMIT = 30
PLURAL_MIN_FREQUENCY = 3
KEY_TERM_BOOST = 0.15
KEY_TERM_BOOST_CAP = 0.30

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "were", "will", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "can", "could", "should", "would",
        "may", "might", "must", "shall", "to", "of", "in", "for", "on", "with", "at",
        "by", "from", "as", "into", "through", "during", "before", "after", "above",
        "below", "between", "under", "again", "further", "then", "once", "here",
        "there", "when", "where", "why", "how", "all", "each", "few", "more", "most",
        "other", "some", "such", "no", "nor", "not", "only", "own", "same", "so",
        "than", "too", "very", "just", "and", "but", "or", "if", "what", "which",
        "who", "this", "that", "these", "those", "it", "its", "any", "both",
    }
)

# Applied in this order, before any corpus-derived rule.
BASE_NORMALIZATIONS: tuple[NormalizationRule, ...] = tuple(
    NormalizationRule(term, replacement)
    for term, replacement in (
        ("gop", "republican"),
        ("republicans", "republican"),
        ("democrats", "democrat"),
        ("dem", "democrat"),
        ("dems", "democrat"),
        ("presidential", "president"),
        ("elections", "election"),
        ("wins", "win"),
        ("winner", "win"),
        ("btc", "bitcoin"),
        ("eth", "ethereum"),
        ("crypto", "cryptocurrency"),
        ("fed", "federal reserve"),
        ("rates", "interest rate"),
        ("rate", "interest rate"),
        ("cpi", "inflation"),
    )
)

_PUNCTUATION = re.compile(r"""[?!.,;:'"()\[\]{}]""")


def tokenize(text: str) -> list[str]:
    """Lowercase, strip punctuation and drop short or stop words."""

    words = _PUNCTUATION.sub("", text.lower()).split()
    return [word for word in words if len(word) > 3 and word not in STOP_WORDS]


def build_match_config(
    questions: Iterable[str],
    *,
    base_rules: Sequence[NormalizationRule] = BASE_NORMALIZATIONS,
) -> MatchConfig:
    frequency: Counter[str] = Counter()
    for question in questions:
        frequency.update(set(tokenize(question)))

    ranked = sorted(
        (item for item in frequency.items() if item[1] >= KEY_TERM_MIN_FREQUENCY),
        key=lambda item: (-item[1], item[0]),
    )
    key_terms = tuple(term for term, _count in ranked[:KEY_TERM_LIMIT])

    base_terms = {rule.term for rule in base_rules}
    derived = [
        NormalizationRule(term, term[:-1])
        for term, count in sorted(frequency.items())
        if count >= PLURAL_MIN_FREQUENCY
        and term.endswith("s")
        and len(term) > 4
        and term[:-1] in frequency
        and term not in base_terms
    ]

    return MatchConfig(normalizations=tuple(base_rules) + tuple(derived), key_terms=key_terms)


def load_match_config(
    repository: MarketRepository,
    *,
    cache: TTLCache | None = None,
    ttl_seconds: float | None = None,
) -> MatchConfig:
    """Return the cached keyword model, rebuilding it from stored active listings on a miss."""

    cache = cache if cache is not None else market_data_cache
    ttl = ttl_seconds if ttl_seconds is not None else settings.match_config_ttl_seconds

    def _build() -> MatchConfig:
        questions = repository.list_active_questions()
        config = build_match_config(questions)
        logger.info(
            "Built match config from {} active questions: {} key terms, {} normalizations",
            len(questions),
            len(config.key_terms),
            len(config.normalizations),
        )
        return config

    return cache.get_or_set(MATCH_CONFIG_CACHE_KEY, _build, ttl)


def _apply_normalizations(text: str, rules: Sequence[NormalizationRule]) -> str:
    for rule in rules:
        pattern = rf"\b{re.escape(rule.term)}\b"
        text = re.sub(pattern, lambda _match, value=rule.replacement: value, text, flags=re.IGNORECASE)
    return text


def extract_keywords(question: str, config: MatchConfig) -> frozenset[str]:
    return frozenset(tokenize(_apply_normalizations(question.lower(), config.normalizations)))


def _score(keywords_a: frozenset[str], keywords_b: frozenset[str], key_terms: Sequence[str]) -> float:
    if not keywords_a or not keywords_b:
        return 0.0

    shared = keywords_a & keywords_b
    jaccard = len(shared) / len(keywords_a | keywords_b)
    boost = min(KEY_TERM_BOOST * sum(1 for term in key_terms if term in shared), KEY_TERM_BOOST_CAP)
    return min(jaccard + boost, 1.0)


def similarity(question_a: str, question_b: str, config: MatchConfig) -> float:
    return _score(
        extract_keywords(question_a, config),
        extract_keywords(question_b, config),
        config.key_terms,
    )


def match_markets(
    markets_a: Sequence[UnifiedMarket],
    markets_b: Sequence[UnifiedMarket],
    config: MatchConfig,
    *,
    min_similarity: float = 0.4,
) -> list[MatchedMarketPair]:
    """Score every cross-venue pair and keep those at or above ``min_similarity``.

    Quadratic in listing count; callers cap each side. Results are ordered
    arbitrage first, then by similarity, then by pair id.
    """

    keywords_b = [(market, extract_keywords(market.question, config)) for market in markets_b]
    pairs: list[MatchedMarketPair] = []
    for market_a in markets_a:
        keywords_a = extract_keywords(market_a.question, config)
        for market_b, words_b in keywords_b:
            score = _score(keywords_a, words_b, config.key_terms)
            if score < min_similarity:
                continue

            verdict = detect_arbitrage(market_a, market_b)
            pairs.append(
                MatchedMarketPair(
                    id=f"match_{market_a.id}_{market_b.id}",
                    market_a=market_a,
                    market_b=market_b,
                    similarity=score,
                    price_difference=abs(market_a.yes_price - market_b.yes_price),
                    has_arbitrage=verdict.has_arbitrage,
                    strategy=verdict.strategy,
                )
            )

    pairs.sort(key=lambda pair: (not pair.has_arbitrage, -pair.similarity, pair.id))
    return pairs
