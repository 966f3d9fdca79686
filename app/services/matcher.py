from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import aiohttp

from app.models.schemas import Business, Product
from app.utils.text import singular, tokens

logger = logging.getLogger(__name__)

FIELD_WEIGHTS = {"name": 3.0, "category": 2.0, "detail": 1.0}

STOPWORDS = {
    "a", "an", "the", "and", "or", "of", "for", "to", "in", "on", "with", "is", "are", "it", "this", "that",
    "i", "me", "my", "you", "your", "we", "do", "does", "have", "has", "any", "some", "want", "need", "please",
    "pls", "plz", "can", "could", "would", "like", "show", "get", "order", "buy", "purchase", "price", "cost",
    "how", "much", "what", "which", "available", "there", "hi", "hello", "hey", "one", "rs", "inr",
    "undo", "venam", "vanganam", "kittumo", "ethra", "aanu", "chahiye", "kya", "hai", "kitna", "mujhe",
    "http", "https", "www", "instagram", "com", "p", "reel", "tv",
}


def query_terms(text: Optional[str]) -> List[str]:
    seen: List[str] = []
    for tok in tokens(text):
        if tok in STOPWORDS or tok.isdigit() or len(tok) < 2:
            continue
        tok = singular(tok)
        if tok not in seen:
            seen.append(tok)
    return seen


def _field_terms(value) -> set:
    if not value:
        return set()
    if isinstance(value, (list, tuple)):
        value = " ".join(str(v) for v in value)
    return {singular(t) for t in tokens(str(value))}


@dataclass
class ProductMatch:
    product: Product
    score: float
    matched_terms: List[str] = field(default_factory=list)
    source: str = "text"

    @property
    def product_id(self) -> str:
        return self.product.id


@dataclass
class MatchContext:
    business_name: str
    language: str = "english"
    recent_product_ids: List[str] = field(default_factory=list)
    use_history: bool = False


def score_product(product: Product, terms: Sequence[str]) -> ProductMatch:
    fields = {
        "name": _field_terms(product.name),
        "category": _field_terms(product.category),
        "detail": _field_terms(product.description) | _field_terms(product.tags),
    }
    score = 0.0
    matched: List[str] = []
    for term in terms:
        best = max((FIELD_WEIGHTS[f] for f, words in fields.items() if term in words), default=0.0)
        if best:
            score += best
            matched.append(term)
    return ProductMatch(product=product, score=score, matched_terms=matched)


def rank_by_text(text: Optional[str], catalog: Sequence[Product], min_score: float) -> List[ProductMatch]:
    terms = query_terms(text)
    if not terms:
        return []
    scored = [score_product(p, terms) for p in catalog]
    kept = [m for m in scored if m.score >= min_score]
    # sorted() is stable, so equal scores keep catalog order
    return sorted(kept, key=lambda m: -m.score)


class ProductMatcher:
    """Matches customer text (and optionally a shared post) against a catalog snapshot."""

    def __init__(self, catalog_accessor=None, graph=None, min_score: float = 2.0):
        self.catalog_accessor = catalog_accessor
        self.graph = graph
        self.min_score = min_score

    async def _resolve_post(
        self, shortcode: str, catalog: Sequence[Product], business: Optional[Business]
    ) -> List[ProductMatch]:
        by_id: Dict[str, Product] = {p.id: p for p in catalog}
        if self.catalog_accessor is not None and business is not None:
            mapped = await self.catalog_accessor.post_products(business.id, shortcode)
            hits = [by_id[pid] for pid in mapped if pid in by_id]
            if hits:
                return [ProductMatch(product=p, score=100.0, source="post") for p in hits]
        if self.graph is None:
            return []
        caption = await self.graph.fetch_post_caption(shortcode, business)
        matches = rank_by_text(caption, catalog, self.min_score)
        for m in matches:
            m.source = "post"
        return matches

    async def match(
        self,
        text: Optional[str],
        catalog: Sequence[Product],
        context: MatchContext,
        post_ref: Optional[str] = None,
        business: Optional[Business] = None,
    ) -> List[ProductMatch]:
        """Rank catalog products for a message; post matches first, then text, then history."""
        post_matches: List[ProductMatch] = []
        if post_ref:
            try:
                post_matches = await self._resolve_post(post_ref, catalog, business)
            except (aiohttp.ClientError, asyncio.TimeoutError, KeyError, ValueError) as e:
                logger.warning("post %s could not be resolved, falling back to text: %s", post_ref, e)

        text_matches = rank_by_text(text, catalog, self.min_score)
        seen = {m.product_id for m in post_matches}
        ranked = post_matches + [m for m in text_matches if m.product_id not in seen]
        if ranked or not context.use_history:
            return ranked

        by_id = {p.id: p for p in catalog}
        return [
            ProductMatch(product=by_id[pid], score=0.0, source="history")
            for pid in context.recent_product_ids
            if pid in by_id
        ]
