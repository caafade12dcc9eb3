"""Tests for the match suggestion queue."""

from __future__ import annotations

import pytest

from pricewatch.database.models import ProductMatchSuggestion
from pricewatch.matching.review import SuggestionQueue
from pricewatch.schemas import MatchCandidate


@pytest.fixture
def queue(db, settings):
    return SuggestionQueue(db, settings)


def cross_shop(candidate):
    return 0.90


class TestSubmit:
    def test_only_candidates_between_floor_and_threshold(self, queue, make_product):
        product = make_product("Samsung Galaxy S23 256GB Schwarz", merged=True)
        weak = make_product("Samsung Galaxy A54", merged=True)
        close = make_product("Samsung Galaxy S23 128GB Schwarz", merged=True)
        exact = make_product("Samsung Galaxy S23 256GB", merged=True)

        created = queue.submit(
            product,
            [
                MatchCandidate(product_id=weak.id, confidence=0.40),
                MatchCandidate(product_id=close.id, confidence=0.84, match_reasons=["brand", "name"]),
                MatchCandidate(product_id=exact.id, confidence=0.95),
            ],
            cross_shop,
        )

        assert [s.merged_product_id for s in created] == [close.merged_product_id]
        assert created[0].status == "pending"
        assert created[0].comparison_data["candidate_name"] == "Samsung Galaxy S23 128GB Schwarz"

    def test_same_pair_queued_once(self, queue, make_product, db):
        product = make_product("Samsung Galaxy S23 256GB Schwarz", merged=True)
        other = make_product("Samsung Galaxy S23 128GB Schwarz", merged=True)
        candidate = MatchCandidate(product_id=other.id, confidence=0.8)

        queue.submit(product, [candidate], cross_shop)
        assert queue.submit(product, [candidate], cross_shop) == []
        assert db.query(ProductMatchSuggestion).count() == 1

    def test_own_merged_product_skipped(self, queue, make_product):
        product = make_product("Samsung Galaxy S23 256GB Schwarz", merged=True)
        assert queue.submit(product, [MatchCandidate(product_id=product.id, confidence=0.8)], cross_shop) == []


class TestPending:
    def test_most_confident_first_and_only_pending(self, queue, make_product, db):
        product = make_product("Samsung Galaxy S23 256GB Schwarz", merged=True)
        a = make_product("Samsung Galaxy S23 128GB Schwarz", merged=True)
        b = make_product("Samsung Galaxy S23+ 256GB", merged=True)
        c = make_product("Samsung Galaxy S23 Ultra", merged=True)
        queue.submit(
            product,
            [
                MatchCandidate(product_id=a.id, confidence=0.6),
                MatchCandidate(product_id=b.id, confidence=0.8),
                MatchCandidate(product_id=c.id, confidence=0.7),
            ],
            cross_shop,
        )
        rejected = db.query(ProductMatchSuggestion).filter_by(merged_product_id=c.merged_product_id).one()
        rejected.status = "rejected"
        db.commit()

        pending = queue.pending()

        assert [s.merged_product_id for s in pending] == [b.merged_product_id, a.merged_product_id]
        assert len(queue.pending(limit=1)) == 1
