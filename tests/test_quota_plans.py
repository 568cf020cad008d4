from src.backend.app import plans, quota


def test_scale_defaults_to_500(monkeypatch):
    monkeypatch.setenv("META_QUOTA_SCALE", "42")
    assert quota.scale() == "500"
    assert quota.cache_ttl()["TEAM"] == 10800


def test_ttl_tiers_follow_scale(monkeypatch):
    monkeypatch.setenv("META_QUOTA_SCALE", "200")
    assert quota.cache_ttl() == {"TEAM": 7200, "LISTS": 300, "PROFILE": 3600, "DASHBOARD": 600}
    monkeypatch.setenv("META_QUOTA_SCALE", "1000")
    assert quota.resource_ttl("CAMPAIGNS_LIST") == 900
    assert quota.resource_ttl("PAGE_NAMES") == 10800
    assert quota.resource_ttl("USER_PREFERENCES") == 86400
    assert quota.chunk_delay_ms() == 150


def test_retry_schedule_is_capped():
    assert quota.retry_delays_ms(5) == [2500, 5000, 10000, 15000, 15000]
    assert quota.retry_delays_ms(0) == []


def test_plan_lookup_is_case_insensitive():
    assert plans.get_plan_limits("pro").api_account_cap == 30
    assert plans.get_plan_limits("enterprise") == plans.PLAN_LIMITS["FREE"]
    assert plans.get_lite_mode_threshold("PLUS") == 15
    assert plans.can_upgrade_to("FREE", "PRO")
    assert not plans.can_upgrade_to("PRO", "PLUS")


def test_dynamic_chunking_shrinks_with_account_count():
    assert [plans.dynamic_chunk_size(n) for n in (20, 21, 51, 101, 501, 1001)] == [10, 8, 5, 4, 3, 2]
    assert [plans.dynamic_chunk_delay_ms(n) for n in (20, 21, 51, 101, 501, 1001)] == [100, 150, 200, 250, 300, 400]
