from conftest import bearer, identity_for
from errors import ERROR_CODES
from roles import Role


def review(client, identity, order_id, **ratings):
    return client.post("/reviews", json={"order_id": order_id, **ratings}, headers=bearer(identity))


def test_review_of_delivered_order(client, database, seed, make_order):
    """Both sub-ratings are stored and the restaurant average is updated."""
    order = make_order(status="delivered", delivery_person_id=seed["delivery"].user_id)
    resp = review(
        client,
        seed["customer"],
        order["id"],
        restaurant_rating=4,
        restaurant_comment="Good curry",
        delivery_rating=5,
        delivery_comment="Quick",
    )
    assert resp.status_code == 201

    body = resp.json()["review"]
    assert body["restaurant"]["rating"] == 4
    assert body["restaurant"]["comment"] == "Good curry"
    assert body["delivery"]["rating"] == 5
    assert body["delivery_guy_id"] == seed["delivery"].user_id
    restaurant = database.get_document("restaurant", seed["restaurant_id"])
    assert restaurant["rating"] == 4
    assert restaurant["review_count"] == 1


def test_second_review_for_same_order_conflicts(client, database, seed, make_order):
    order = make_order(status="delivered")
    assert review(client, seed["customer"], order["id"], rating=5).status_code == 201
    resp = review(client, seed["customer"], order["id"], rating=1)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == ERROR_CODES["DUPLICATE_ENTRY"]
    assert database.count("review") == 1
    assert database.get_document("restaurant", seed["restaurant_id"])["rating"] == 5


def test_average_is_the_mean_of_restaurant_ratings(client, database, seed, make_order):
    for rating in (4, 5, 3):
        order = make_order(status="delivered")
        assert review(client, seed["customer"], order["id"], restaurant_rating=rating).status_code == 201
    # a delivery-only review does not count towards the restaurant
    order = make_order(status="delivered", delivery_person_id=seed["delivery"].user_id)
    assert review(client, seed["customer"], order["id"], delivery_rating=1).status_code == 201

    restaurant = database.get_document("restaurant", seed["restaurant_id"])
    assert restaurant["rating"] == 4
    assert restaurant["review_count"] == 3


def test_undelivered_order_cannot_be_reviewed(client, database, seed, make_order):
    order = make_order(status="out_for_delivery")
    resp = review(client, seed["customer"], order["id"], rating=5)
    assert resp.status_code == 400
    assert database.count("review") == 0


def test_delivery_rating_needs_a_delivery_person(client, seed, make_order):
    order = make_order(status="delivered")
    assert review(client, seed["customer"], order["id"], delivery_rating=5).status_code == 400


def test_only_the_buyer_can_review(client, seed, make_order):
    order = make_order(status="delivered")
    assert review(client, identity_for(Role.CUSTOMER), order["id"], rating=5).status_code == 403


def test_delivery_agents_cannot_post_reviews(client, seed, make_order):
    order = make_order(status="delivered")
    assert review(client, seed["delivery"], order["id"], rating=5).status_code == 403


def test_at_least_one_rating_is_required(client, seed, make_order):
    order = make_order(status="delivered")
    resp = review(client, seed["customer"], order["id"], comment="no stars")
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == ERROR_CODES["VALIDATION_ERROR"]


def test_rating_is_bounded(client, seed, make_order):
    order = make_order(status="delivered")
    assert review(client, seed["customer"], order["id"], rating=6).status_code == 400


def test_listing_reviews_by_restaurant(client, seed, make_order):
    order = make_order(status="delivered")
    review(client, seed["customer"], order["id"], rating=5, comment="Great")
    resp = client.get("/reviews", params={"restaurant_id": seed["restaurant_id"]})
    assert resp.status_code == 200
    assert resp.json()["pagination"]["total"] == 1
    assert resp.json()["reviews"][0]["restaurant"]["comment"] == "Great"
