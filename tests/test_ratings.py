import pytest
from pymongo.errors import DuplicateKeyError

import reports
from errors import Forbidden, ValidationError


def test_rating_same_user_twice_keeps_one_row_with_latest_values(deliver_order, manager, store):
    order = deliver_order()
    manager.upsert_rating(order["id"], "buyer-1", "farmer-1", 4)
    saved = manager.upsert_rating(order["id"], "buyer-1", "farmer-1", 5, "great")
    rows = store.ratings.for_order(order["id"])
    assert len(rows) == 1
    assert rows[0]["rating"] == 5
    assert rows[0]["comment"] == "great"
    assert saved["rating"] == 5


def test_each_participant_can_be_rated_separately(deliver_order, manager, store):
    order = deliver_order()
    manager.upsert_rating(order["id"], "buyer-1", "farmer-1", 5)
    manager.upsert_rating(order["id"], "buyer-1", order["dispatcherId"], 3)
    assert len(store.ratings.for_order(order["id"])) == 2


@pytest.mark.parametrize("value", [0, 6, 4.5])
def test_rating_outside_one_to_five_is_rejected(deliver_order, manager, value):
    order = deliver_order()
    with pytest.raises(ValidationError):
        manager.upsert_rating(order["id"], "buyer-1", "farmer-1", value)


def test_undelivered_order_cannot_be_rated(manager, place_order):
    order = place_order()
    with pytest.raises(ValidationError):
        manager.upsert_rating(order["id"], "buyer-1", "farmer-1", 5)


def test_outsiders_cannot_rate(deliver_order, manager):
    order = deliver_order()
    with pytest.raises(Forbidden):
        manager.upsert_rating(order["id"], "farmer-2", "farmer-1", 1)


def test_rating_yourself_is_rejected(deliver_order, manager):
    order = deliver_order()
    with pytest.raises(ValidationError):
        manager.upsert_rating(order["id"], "buyer-1", "buyer-1", 5)


def test_rating_summary(deliver_order, manager, store):
    first = deliver_order()
    second = deliver_order()
    manager.upsert_rating(first["id"], "buyer-1", "farmer-1", 5)
    manager.upsert_rating(second["id"], "buyer-1", "farmer-1", 4)
    summary = reports.rating_summary(store, "farmer-1")
    assert summary["averageRating"] == 4.5
    assert summary["totalRatings"] == 2
    assert summary["ratingDistribution"] == {"1": 0, "2": 0, "3": 0, "4": 1, "5": 1}


def test_rating_summary_without_ratings(store):
    summary = reports.rating_summary(store, "nobody")
    assert summary["totalRatings"] == 0
    assert summary["averageRating"] == 0


def test_ratings_are_unique_per_order_and_rated_user(mongo_db):
    ratings = mongo_db["ratings"]
    ratings.insert_one({"orderId": "o1", "ratedUserId": "u1", "raterId": "b1", "rating": 4})
    with pytest.raises(DuplicateKeyError):
        ratings.insert_one({"orderId": "o1", "ratedUserId": "u1", "raterId": "b2", "rating": 5})
    ratings.insert_one({"orderId": "o1", "ratedUserId": "u2", "raterId": "b1", "rating": 5})
    assert ratings.count_documents({"orderId": "o1"}) == 2


def test_rating_upsert_keeps_created_at(deliver_order, manager, store, clock):
    order = deliver_order()
    first = manager.upsert_rating(order["id"], "buyer-1", "farmer-1", 4)
    clock.advance(hours=1)
    second = manager.upsert_rating(order["id"], "buyer-1", "farmer-1", 5, "great")
    assert second["createdAt"] == first["createdAt"]
    assert second["updatedAt"] != first["updatedAt"]
