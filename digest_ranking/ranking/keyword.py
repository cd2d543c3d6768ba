"""Lexical scoring: keyword scorer, term-overlap fallback and BM25.

All scorers here are pure functions of the query and the item text. They
never touch the network, so a lexical signal is always available.
"""

import math
import re
import string
from collections import Counter
from typing import Dict, Iterable, List, Mapping, Sequence

import structlog

from ..models import Item

logger = structlog.get_logger("ranking.keyword")

_WORD_RE = re.compile(r"\b\w+\b")


def tokenize(text: str, min_term_length: int = 0) -> List[str]:
    """Split on whitespace, lowercase, and strip surrounding punctuation.

    Tokens shorter than ``min_term_length`` (and empty tokens) are dropped.
    """
    tokens = []
    for raw in (text or "").lower().split():
        token = raw.strip(string.punctuation)
        if token and len(token) >= min_term_length:
            tokens.append(token)
    return tokens


def normalize_scores(scores: Mapping[str, float]) -> Dict[str, float]:
    """Divide every score by the pool maximum; an all-zero pool stays zero."""
    if not scores:
        return {}
    top = max(scores.values())
    if top <= 0:
        return {key: 0.0 for key in scores}
    return {key: value / top for key, value in scores.items()}


class KeywordScorer:
    """Field-weighted term-frequency scorer.

    Per query term the score adds ``min(title_count, term_cap) *
    title_weight + min(body_count, term_cap) * body_weight``. A multi-term
    query whose whole phrase appears in the title earns ``phrase_bonus``; in
    the body it earns a fifth of that.
    """

    def __init__(
        self,
        min_term_length: int = 0,
        title_weight: float = 3.0,
        body_weight: float = 1.0,
        term_cap: int = 10,
        phrase_bonus: float = 5.0,
    ):
        self.min_term_length = min_term_length
        self.title_weight = title_weight
        self.body_weight = body_weight
        self.term_cap = term_cap
        self.phrase_bonus = phrase_bonus

    def query_terms(self, query: str) -> List[str]:
        # Repeated query terms count once
        return list(dict.fromkeys(tokenize(query, self.min_term_length)))

    def score(self, query: str, items: Iterable[Item]) -> Dict[str, float]:
        """Score every item; items with no match are present with 0.0.

        Returns ``{}`` when the query has no usable terms.
        """
        terms = self.query_terms(query)
        if not terms:
            logger.debug("Query has no usable terms", query=query[:50])
            return {}

        phrase_tokens = tokenize(query)
        phrase = " ".join(phrase_tokens) if len(phrase_tokens) > 1 else None

        scores: Dict[str, float] = {}
        for item in items:
            title_tokens = tokenize(item.title)
            body_tokens = tokenize(item.body_text)
            title_counts = Counter(title_tokens)
            body_counts = Counter(body_tokens)

            score = 0.0
            for term in terms:
                score += min(title_counts[term], self.term_cap) * self.title_weight
                score += min(body_counts[term], self.term_cap) * self.body_weight

            if phrase:
                if _contains_phrase(title_tokens, phrase):
                    score += self.phrase_bonus
                if _contains_phrase(body_tokens, phrase):
                    score += self.phrase_bonus / 5

            scores[item.id] = score

        return scores


def _contains_phrase(tokens: Sequence[str], phrase: str) -> bool:
    # Pad with spaces so "code search" does not match inside "barcode searches"
    return f" {phrase} " in f" {' '.join(tokens)} "


class TermOverlapScorer:
    """Fraction of usable query terms present anywhere in the item text."""

    def __init__(self, min_term_length: int = 3):
        self.min_term_length = min_term_length

    def score(self, query: str, items: Iterable[Item]) -> Dict[str, float]:
        terms = list(dict.fromkeys(tokenize(query, self.min_term_length)))
        if not terms:
            return {}

        scores = {}
        for item in items:
            present = set(tokenize(f"{item.title} {item.body_text}"))
            scores[item.id] = sum(1 for term in terms if term in present) / len(terms)
        return scores


class BM25Index:
    """Okapi BM25 over title, summary, source and category.

    Tokens are ``\\w+`` runs longer than two characters.
    """

    K1 = 1.5
    B = 0.75

    def __init__(self):
        self.term_freqs: Dict[str, Counter] = {}
        self.doc_lengths: Dict[str, int] = {}
        self.doc_freq: Counter = Counter()
        self.total_docs = 0
        self.avg_doc_length = 0.0

    @staticmethod
    def tokenize(text: str) -> List[str]:
        return [token for token in _WORD_RE.findall(text.lower()) if len(token) > 2]

    @staticmethod
    def item_to_document(item: Item) -> str:
        parts = [item.title, item.summary or "", item.source, item.category or ""]
        return " ".join(part for part in parts if part)

    def add_documents(self, items: Iterable[Item]) -> None:
        for item in items:
            tokens = self.tokenize(self.item_to_document(item))
            if item.id in self.term_freqs:
                self.doc_freq.subtract(set(self.term_freqs[item.id]))
            else:
                self.total_docs += 1
            self.term_freqs[item.id] = Counter(tokens)
            self.doc_lengths[item.id] = len(tokens)
            self.doc_freq.update(set(tokens))

        total_length = sum(self.doc_lengths.values())
        self.avg_doc_length = total_length / max(self.total_docs, 1)

    def idf(self, term: str) -> float:
        n = self.doc_freq.get(term, 0)
        return math.log((self.total_docs - n + 0.5) / (n + 0.5) + 1)

    def score(self, terms: Sequence[str]) -> Dict[str, float]:
        """Raw BM25 score of every indexed document for ``terms``."""
        scores = {doc_id: 0.0 for doc_id in self.term_freqs}
        avg_length = self.avg_doc_length or 1.0

        for term in (t.lower() for t in terms):
            idf = self.idf(term)
            for doc_id, freqs in self.term_freqs.items():
                tf = freqs.get(term, 0)
                if not tf:
                    continue
                doc_len = self.doc_lengths[doc_id]
                numerator = tf * (self.K1 + 1)
                denominator = tf + self.K1 * (1 - self.B + self.B * (doc_len / avg_length))
                scores[doc_id] += idf * (numerator / denominator)

        return scores

    @staticmethod
    def normalize_scores(scores: Mapping[str, float]) -> Dict[str, float]:
        """Scale into [0, 1]; scores below 1 are left as they are."""
        top = max(list(scores.values()) + [1.0])
        return {doc_id: min(value / top, 1.0) for doc_id, value in scores.items()}
