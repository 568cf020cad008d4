import json
import time

from src.backend.app import assets
from src.backend.app.models import Subscription, TeamMember, User


def _seed_connection(db, selected_pages=None, selected_accounts=None):
    db.add(User(id="host", email="host@example.com", name="Hana"))
    db.add(TeamMember(user_id="host", member_type="facebook", facebook_user_id="fb1", facebook_name="Hana FB", access_token="member-token-1"))
    if selected_pages is not None or selected_accounts is not None:
        db.add(Subscription(
            user_id="host",
            status="active",
            expires_at=int(time.time()) + 1000,
            selected_page_ids=json.dumps(selected_pages or []),
            selected_ad_account_ids=json.dumps(selected_accounts or []),
        ))
    db.commit()


def test_basic_units_respect_zero_decimal_currencies():
    assert assets.from_basic_units("1234", "USD") == 12.34
    assert assets.from_basic_units(1234, "JPY") == 1234
    assert assets.from_basic_units("abc", "USD") == 0.0


def test_page_business_name_fallback_chain():
    biz_map = {"b1": "Biz One"}
    page_map = {"p3": "Shared Biz"}
    assert assets._page_business_name({"id": "p1", "business": {"id": "b1", "name": "Direct"}}, biz_map, page_map) == "Direct"
    assert assets._page_business_name({"id": "p2", "business": {"id": "b1"}}, biz_map, page_map) == "Biz One"
    assert assets._page_business_name({"id": "p3"}, biz_map, page_map) == "Shared Biz"
    assert assets._page_business_name({"id": "p4", "business": {"id": "b9"}}, biz_map, page_map) == "(Biz ID: b9)"
    assert assets._page_business_name({"id": "p5"}, biz_map, page_map) == "Personal Page"


def test_pages_hint_without_connections(db):
    db.add(User(id="host"))
    db.commit()
    result = assets.get_team_pages_for_user(db, "host")
    assert result.pages == []
    assert result.hint == "no_team_members"


def test_pages_merge_business_and_direct(db, graph):
    _seed_connection(db)
    graph.add("me/businesses", {"data": [{
        "id": "b1",
        "name": "Biz One",
        "owned_pages": {"data": [
            {"id": "p1", "name": "Page One", "access_token": "page-token-1"},
            {"id": "p2", "name": "Page Two"},
        ]},
    }]})
    graph.add("me/accounts", {"data": [
        {"id": "p1", "name": "Page One", "access_token": "page-token-1"},
        {"id": "p2", "name": "Page Two", "access_token": "page-token-2", "business": {"id": "b1"}},
        {"id": "p3", "name": "Side Page", "access_token": "page-token-3"},
    ]})

    result = assets.get_team_pages_for_user(db, "host", "host@example.com")
    assert result.hint is None
    assert [p["id"] for p in result.pages] == ["p1", "p2", "p3"]
    by_id = {p["id"]: p for p in result.pages}
    assert by_id["p1"]["business_name"] == "Biz One"
    assert by_id["p2"]["business_name"] == "Biz One"
    assert by_id["p3"]["business_name"] == "Personal Page"
    assert by_id["p1"]["_source"]["facebook_user_id"] == "fb1"
    assert by_id["p1"]["_source"]["team_member_id"]


def test_pages_permission_error_means_no_pages(db, graph):
    _seed_connection(db)
    graph.add("me/accounts", (403, {"error": {"message": "Requires pages_show_list permission", "code": 200}}))
    result = assets.get_team_pages_for_user(db, "host", "host@example.com")
    assert result.pages == []
    assert result.hint == "fetch_failed"


def test_ad_accounts_merge_and_pool_filter(db, graph):
    _seed_connection(db, selected_accounts=["1", "act_3"])
    graph.add("me/businesses", {"data": [{"id": "b1", "name": "Biz One", "profile_picture_uri": "https://img/b1"}]})
    graph.add("b1/owned_ad_accounts", {"data": [{"id": "act_1", "account_id": "1", "name": "Owned"}]})
    graph.add("me/adaccounts", {"data": [
        {"id": "act_1", "account_id": "1", "name": "Owned again"},
        {"id": "act_3", "account_id": "3", "name": "Direct", "business": {"id": "b1"}},
        {"id": "act_4", "account_id": "4", "name": "Personal"},
    ]})

    everything = assets.get_team_ad_accounts(db, "host", "host@example.com", mode="business")
    assert [a["id"] for a in everything["accounts"]] == ["act_1", "act_3", "act_4"]
    by_id = {a["id"]: a for a in everything["accounts"]}
    assert by_id["act_1"]["name"] == "Owned"
    assert by_id["act_3"]["business_name"] == "Biz One"
    assert by_id["act_3"]["business_profile_picture_uri"] == "https://img/b1"
    assert by_id["act_4"]["business_name"] == "Personal Account"
    assert everything["team_members_count"] == 1

    filtered = assets.get_team_ad_accounts(db, "host", "host@example.com")
    assert [a["id"] for a in filtered["accounts"]] == ["act_1", "act_3"]


def test_team_config_builds_filtered_and_unfiltered_views(db, graph):
    _seed_connection(db, selected_pages=["p1"], selected_accounts=["1"])
    graph.add("me/businesses", {"data": [{"id": "b1", "name": "Biz One", "profile_picture_uri": "https://img/b1"}]})
    graph.add("me/adaccounts", {"data": [{
        "id": "act_1",
        "account_id": "1",
        "currency": "USD",
        "spend_cap": "5000",
        "amount_spent": "1234",
        "business": {"id": "b1"},
    }]})
    graph.add("me/accounts", {"data": [{"id": "p1", "name": "Page One", "access_token": "page-token-1", "picture": {"data": {"url": "https://img/p1"}}}]})
    graph.add("b1/owned_pages", {"data": [{"id": "p1", "name": "Page One"}, {"id": "p9", "name": "Page Nine"}]})
    graph.add("b1/owned_ad_accounts", {"data": [{"id": "act_1", "account_id": "1"}, {"id": "act_5", "account_id": "5"}]})

    config = assets.get_team_config(db, "host", "host@example.com")

    assert [b["id"] for b in config["businesses"]] == ["b1"]
    all_pages = {p["id"]: p for p in config["all_business_pages"]}
    assert set(all_pages) == {"p1", "p9"}
    assert all_pages["p1"]["access_token"] == "page-token-1"
    assert "access_token" not in all_pages["p9"]

    all_accounts = {a["id"]: a for a in config["all_business_accounts_unfiltered"]}
    assert all_accounts["act_1"]["has_direct_access"] is True
    assert all_accounts["act_5"]["has_direct_access"] is False

    assert [a["id"] for a in config["accounts"]] == ["act_1"]
    assert config["accounts"][0]["spend_cap"] == 50.0
    assert config["accounts"][0]["amount_spent"] == 12.34
    assert config["accounts"][0]["business_name"] == "Biz One"
    assert [p["id"] for p in config["pages"]] == ["p1"]
    assert [p["id"] for p in config["business_pages"]] == ["p1"]
    assert [a["id"] for a in config["business_accounts"]] == ["act_1"]
    assert config["subscription_selected_page_ids"] == ["p1"]
    assert config["subscription_selected_account_ids"] == ["act_1"]


def test_team_config_without_connections_is_empty(db):
    db.add(User(id="host"))
    db.commit()
    assert assets.get_team_config(db, "host") == assets.empty_team_config()
