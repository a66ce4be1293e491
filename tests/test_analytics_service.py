import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from fastapi import HTTPException

from app.services.analytics_events import (
    CatalogSnapshot,
    EventType,
    ModifierPayload,
    parse_event,
    parse_events,
    parse_timestamp,
)
from app.services.analytics_range import resolve_range
from app.services.analytics_service import (
    AnalyticsUnavailableError,
    compute_analytics,
    load_analytics,
    normalize_search_text,
    percentage,
    popularity_score,
)

NOW = datetime(2024, 5, 15, 14, 30, tzinfo=timezone.utc)


def _row(event_type: str, days_ago: int = 0, **fields: Any) -> Dict[str, Any]:
    created_at = NOW - timedelta(days=days_ago, minutes=5)
    row = {"event_type": event_type, "created_at": created_at.isoformat().replace("+00:00", "Z")}
    row.update(fields)
    return row


def _catalog(**overrides: List[Dict[str, Any]]) -> CatalogSnapshot:
    rows = {
        "categories": [
            {"id": "cat-mains", "name_en": "Mains"},
            {"id": "cat-desserts", "name_en": "Desserts", "name_ar": "حلويات"},
            {"id": "cat-offers", "name_en": "Offers", "is_offers": True},
        ],
        "items": [
            {
                "id": "item-hummus",
                "name_en": "Hummus",
                "name_ar": "حمّص",
                "category_id": "cat-mains",
                "contains_sesame": True,
            },
            {
                "id": "item-creme",
                "name_en": "Crème brûlée",
                "category_id": "cat-desserts",
                "is_featured": True,
                "contains_dairy": True,
                "contains_eggs": True,
            },
            {"id": "item-combo", "name_en": "Lunch combo", "category_id": "cat-offers"},
        ],
        "modifier_groups": [{"id": "mod-size", "name": "Size"}],
        "branches": [{"id": "branch-downtown", "name": "Downtown"}],
    }
    rows.update(overrides)
    return CatalogSnapshot.from_rows(**rows)


def _compute(
    rows: List[Dict[str, Any]],
    range_value: str = "7d",
    catalog: Optional[CatalogSnapshot] = None,
    previous_rows: Optional[List[Dict[str, Any]]] = None,
):
    window = resolve_range(range_value, NOW)
    previous_events = parse_events(previous_rows) if previous_rows is not None else None
    return compute_analytics(
        parse_events(rows),
        catalog if catalog is not None else _catalog(),
        window,
        previous_events=previous_events,
    )


def test_percentage_rounds_half_up_and_guards_zero() -> None:
    assert percentage(1, 8) == 13
    assert percentage(1, 3) == 33
    assert percentage(2, 3) == 67
    assert percentage(5, 0) == 0


def test_parse_event_reads_metadata_from_json_text() -> None:
    event = parse_event(
        _row("menu_search", metadata='{"search_term": "  Falafel "}', session_id="s1")
    )

    assert event is not None
    assert event.event_type is EventType.MENU_SEARCH
    assert event.payload.term == "falafel"
    assert event.created_at.tzinfo is not None


def test_parse_event_drops_rows_without_timestamp() -> None:
    assert parse_event({"event_type": "menu_view", "created_at": "yesterday"}) is None
    assert parse_events([{"event_type": "menu_view"}, "garbage", _row("menu_view")]) != []


def test_modifier_event_without_identifier_uses_group_key() -> None:
    event = parse_event(_row("modifier_group_open", metadata={}))

    assert event.payload == ModifierPayload(modifier_id="group")


def test_device_breakdown_counts_menu_views_only() -> None:
    rows = [_row("menu_view", device_type="mobile") for _ in range(60)]
    rows += [_row("menu_view", device_type="desktop") for _ in range(40)]
    rows.append(_row("item_view", device_type="tablet", item_id="item-hummus"))

    result = _compute(rows)

    assert [entry.model_dump() for entry in result.devices] == [
        {"label": "Mobile", "value": 60},
        {"label": "Desktop", "value": 40},
        {"label": "Tablet/Other", "value": 0},
    ]
    assert result.kpis["menu_views"] == 100


def test_unknown_device_types_fall_into_other_bucket() -> None:
    rows = [_row("menu_view", device_type="Tablet"), _row("menu_view"), _row("menu_view", device_type="MOBILE")]

    result = _compute(rows)

    values = {entry.label: entry.value for entry in result.devices}
    assert values == {"Mobile": 1, "Desktop": 0, "Tablet/Other": 2}


def test_languages_sorted_by_count_with_unknown_fallback() -> None:
    rows = [_row("menu_view", language="ar") for _ in range(3)]
    rows += [_row("menu_view", language="en") for _ in range(3)]
    rows.append(_row("menu_view"))

    result = _compute(rows)

    assert [(entry.label, entry.value) for entry in result.languages] == [
        ("ar", 3),
        ("en", 3),
        ("unknown", 1),
    ]


def test_search_without_catalog_match_is_a_zero_result() -> None:
    rows = [
        _row("menu_search", metadata={"search_term": "Sushi"}),
        _row("menu_search", metadata={"search_term": "hummus"}),
    ]

    result = _compute(rows)

    assert [entry.model_dump() for entry in result.search_zero_results] == [{"term": "sushi", "count": 1}]
    assert result.search_conversion.total_searches == 2
    assert result.search_conversion.zero_results == 1
    assert result.search_conversion.zero_rate == 50


def test_search_matching_ignores_diacritics_in_both_scripts() -> None:
    rows = [
        _row("menu_search", metadata={"search_term": "creme brulee"}),
        _row("menu_search", metadata={"search_term": "حمص"}),
        _row("menu_search", metadata={"search_term": "desserts"}),
    ]

    result = _compute(rows)

    assert result.search_zero_results == []
    assert normalize_search_text("  Crème ") == "creme"


def test_blank_search_terms_count_as_searches_but_not_terms() -> None:
    rows = [_row("menu_search", metadata={"search_term": "   "}), _row("menu_search")]

    result = _compute(rows)

    assert result.kpis["searches"] == 2
    assert result.top_search_terms == []


def test_rates_are_zero_when_nobody_searched() -> None:
    rows = [_row("item_view", item_id="item-hummus", category_id="cat-mains")]

    conversion = _compute(rows).search_conversion

    assert conversion.total_searches == 0
    assert (conversion.zero_rate, conversion.view_rate, conversion.favorite_rate) == (0, 0, 0)


def test_allergen_filter_counts_each_flagged_allergen_once() -> None:
    rows = [_row("allergen_filter_apply", metadata={"dairy": True, "nuts": True, "soy": False})]

    result = _compute(rows)

    counts = {entry.allergen: entry.count for entry in result.allergens}
    assert counts == {"dairy": 1, "nuts": 1, "eggs": 0, "shellfish": 0, "soy": 0, "sesame": 0}
    assert [entry.allergen for entry in result.allergens][:2] == ["dairy", "nuts"]


def test_featured_engagement_uses_views_and_opens() -> None:
    rows = [_row("item_view", item_id="item-creme", category_id="cat-desserts") for _ in range(3)]
    rows.append(_row("item_modal_open", item_id="item-creme", category_id="cat-desserts"))
    rows.append(_row("item_view", item_id="item-hummus", category_id="cat-mains"))

    result = _compute(rows)

    assert [entry.model_dump() for entry in result.featured] == [
        {
            "id": "item-creme",
            "name": "Crème brûlée",
            "views": 3,
            "opens": 1,
            "favorites": 0,
            "engagement": 33,
        }
    ]


def test_category_table_only_counts_item_level_events() -> None:
    rows = [_row("category_view", category_id="cat-mains") for _ in range(5)]
    rows.append(_row("item_view", item_id="item-creme", category_id="cat-desserts"))
    rows.append(_row("item_modal_open", item_id="item-creme", category_id="cat-desserts"))

    result = _compute(rows)

    assert result.kpis["category_views"] == 5
    assert [(row.id, row.name, row.views, row.modal_opens, row.engagement) for row in result.categories] == [
        ("cat-desserts", "Desserts", 1, 1, 100)
    ]


def test_top_items_rank_by_weighted_popularity_and_cap() -> None:
    items = [{"id": f"item-{index:02d}", "name_en": f"Dish {index}"} for index in range(20)]
    rows = []
    for index in range(20):
        rows += [_row("item_view", item_id=f"item-{index:02d}") for _ in range(index)]
    rows += [_row("menu_favorite", item_id="item-01") for _ in range(10)]
    rows += [_row("item_modal_open", item_id="item-02") for _ in range(2)]

    result = _compute(rows, catalog=_catalog(items=items))

    assert len(result.top_items) == 15
    assert result.top_items[0].id == "item-01"
    assert result.top_items[0].popularity == 1 + 10 * 5
    popularities = [entry.popularity for entry in result.top_items]
    assert popularities == sorted(popularities, reverse=True)
    assert result.top_items[0].category == "Uncategorized"


def test_popularity_score_weights() -> None:
    assert popularity_score(Counter(views=2, modal_opens=1, favorites=1)) == 2 + 3 + 5


def test_items_missing_from_catalog_are_named_unknown() -> None:
    rows = [_row("menu_favorite", item_id="item-ghost") for _ in range(2)]

    result = _compute(rows)

    assert [entry.model_dump() for entry in result.favorites_leaderboard] == [
        {"id": "item-ghost", "name": "Unknown", "category": "Uncategorized", "count": 2}
    ]


def test_unknown_event_types_are_ignored_but_keep_their_session() -> None:
    rows = [
        _row("menu_view", session_id="s1"),
        _row("mystery_event", session_id="s2", item_id="item-hummus"),
    ]

    result = _compute(rows)

    assert result.kpis["menu_views"] == 1
    assert result.kpis["unique_sessions"] == 2
    assert result.top_items == []


def test_unique_sessions_fall_back_to_menu_views() -> None:
    rows = [_row("menu_view") for _ in range(4)]

    assert _compute(rows).kpis["unique_sessions"] == 4


def test_events_before_window_are_ignored() -> None:
    rows = [_row("menu_view"), _row("menu_view", days_ago=10)]

    result = _compute(rows)

    assert result.kpis["menu_views"] == 1
    assert len(result.views_series) == 7
    assert sum(point.count for point in result.views_series) == 1


def test_all_range_series_lists_only_active_days() -> None:
    rows = [_row("menu_view", days_ago=days) for days in (0, 40, 40, 200)]

    result = _compute(rows, range_value="all")

    assert result.since is None
    assert result.window_days == 0
    assert [point.count for point in result.views_series] == [1, 2, 1]
    assert result.comparison is None


def test_funnels_follow_kpis() -> None:
    rows = [_row("menu_view"), _row("menu_view"), _row("menu_filter"), _row("category_view")]

    funnels = _compute(rows).funnels

    assert [(step.label, step.value) for step in funnels.funnel_a] == [
        ("Menu views", 2),
        ("Category clicks", 1),
        ("Item views", 0),
        ("Modal opens", 0),
        ("Favorites", 0),
    ]
    assert [step.label for step in funnels.funnel_b] == ["Menu views", "Filters applied", "Item views"]


def test_modifier_engagement_per_group_and_item() -> None:
    rows = [
        _row("modifier_group_open", item_id="item-hummus", metadata={"modifierId": "mod-size"}),
        _row("modifier_option_select", item_id="item-hummus", metadata={"modifierId": "mod-size", "optionId": "o1"}),
        _row("modifier_option_remove", metadata={}),
    ]

    result = _compute(rows)

    assert [(row.id, row.name, row.opens, row.selects, row.removes) for row in result.modifiers] == [
        ("mod-size", "Size", 1, 1, 0),
        ("group", "Unknown", 0, 0, 1),
    ]
    assert [(row.id, row.name, row.opens, row.selects) for row in result.modifier_items] == [
        ("item-hummus", "Hummus", 1, 1)
    ]


def test_allergen_heatmap_comes_from_catalog() -> None:
    heatmap = {row.id: row for row in _compute([]).allergen_heatmap}

    assert heatmap["cat-desserts"].total_items == 1
    assert heatmap["cat-desserts"].counts["dairy"] == 1
    assert heatmap["cat-desserts"].counts["eggs"] == 1
    assert heatmap["cat-mains"].counts["sesame"] == 1
    assert heatmap["cat-offers"].counts == {key: 0 for key in ("dairy", "nuts", "eggs", "shellfish", "soy", "sesame")}


def test_branches_and_offers() -> None:
    rows = [_row("menu_view", branch_id="branch-downtown") for _ in range(3)]
    rows.append(_row("menu_view", branch_id="branch-closed"))
    rows.append(_row("category_view", category_id="cat-offers"))
    rows.append(_row("item_view", category_id="cat-offers", item_id="item-combo"))
    rows.append(_row("whatsapp_click"))

    result = _compute(rows)

    assert [(row.name, row.views, row.share) for row in result.branches] == [
        ("Downtown", 3, 75),
        ("Unknown branch", 1, 25),
    ]
    assert (result.offers.section_views, result.offers.item_views) == (1, 1)
    assert result.kpis["whatsapp_clicks"] == 1


def test_comparison_reports_deltas_against_previous_window() -> None:
    rows = [_row("menu_view", device_type="mobile", language="en") for _ in range(5)]
    previous = [_row("menu_view", days_ago=8, device_type="mobile", language="en") for _ in range(2)]
    previous.append(_row("menu_view", days_ago=9, device_type="desktop", language="fr"))

    comparison = _compute(rows, previous_rows=previous).comparison

    assert comparison is not None
    assert comparison.previous_window.end == datetime(2024, 5, 8, 23, 59, 59, 999000, tzinfo=timezone.utc)
    devices = {row.label: (row.current, row.previous, row.delta) for row in comparison.devices}
    assert devices["Mobile"] == (5, 2, 3)
    assert devices["Desktop"] == (0, 1, -1)
    languages = {row.label: (row.current, row.previous, row.delta) for row in comparison.languages}
    assert languages == {"en": (5, 2, 3), "fr": (0, 1, -1)}


def test_compute_is_idempotent_and_order_independent() -> None:
    rows = [
        _row("menu_view", session_id="s1", device_type="mobile", language="en"),
        _row("item_view", item_id="item-hummus", category_id="cat-mains"),
        _row("item_view", item_id="item-creme", category_id="cat-desserts"),
        _row("menu_search", metadata={"search_term": "pizza"}),
        _row("menu_search", metadata={"search_term": "burger"}),
        _row("menu_favorite", item_id="item-creme", days_ago=2),
    ]

    first = _compute(rows)
    second = _compute(rows)
    reversed_order = _compute(list(reversed(rows)))

    assert first.model_dump() == second.model_dump()
    assert first.model_dump() == reversed_order.model_dump()


class _StubDAO:
    restaurant_id = "rest-1"

    def __init__(self, events: List[Dict[str, Any]], *, fail: Optional[Dict[str, BaseException]] = None):
        self.events = events
        self.fail = fail or {}
        self.event_calls: List[Dict[str, Any]] = []

    async def _maybe_fail(self, name: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if name in self.fail:
            raise self.fail[name]
        return rows

    async def fetch_events(self, since, until=None, event_types=None):
        self.event_calls.append({"since": since, "until": until, "event_types": event_types})
        name = "previous" if event_types else "events"
        return await self._maybe_fail(name, self.events)

    async def fetch_categories(self):
        return await self._maybe_fail("categories", [{"id": "cat-mains", "name_en": "Mains"}])

    async def fetch_items(self):
        return await self._maybe_fail(
            "items", [{"id": "item-hummus", "name_en": "Hummus", "category_id": "cat-mains"}]
        )

    async def fetch_modifier_groups(self):
        return await self._maybe_fail("modifier_groups", [])

    async def fetch_branches(self):
        return await self._maybe_fail("branches", [])


def test_load_analytics_fetches_window_and_previous_views() -> None:
    dao = _StubDAO([_row("item_view", item_id="item-hummus", category_id="cat-mains")])

    result = asyncio.run(load_analytics(dao, "30d", NOW))

    assert result.range == "30d"
    assert result.top_items[0].name == "Hummus"
    assert result.comparison is not None
    window = resolve_range("30d", NOW)
    previous_call = next(call for call in dao.event_calls if call["event_types"])
    assert previous_call["since"] == window.previous.start
    assert previous_call["event_types"] == ["menu_view"]


def test_load_analytics_degrades_when_catalog_is_unavailable() -> None:
    dao = _StubDAO(
        [_row("item_view", item_id="item-hummus", category_id="cat-mains")],
        fail={"items": HTTPException(status_code=502, detail="boom"), "previous": RuntimeError("down")},
    )

    result = asyncio.run(load_analytics(dao, "7d", NOW))

    assert result.top_items[0].name == "Unknown"
    assert result.top_items[0].category == "Uncategorized"
    assert result.comparison is None


def test_load_analytics_raises_when_events_are_unavailable() -> None:
    dao = _StubDAO([], fail={"events": HTTPException(status_code=502, detail="Supabase error")})

    with pytest.raises(AnalyticsUnavailableError) as excinfo:
        asyncio.run(load_analytics(dao, "7d", NOW))

    assert excinfo.value.status_code == 502


def test_load_analytics_all_range_skips_previous_window() -> None:
    dao = _StubDAO([_row("menu_view", days_ago=400)])

    result = asyncio.run(load_analytics(dao, "all", NOW))

    assert result.kpis["menu_views"] == 1
    assert dao.event_calls == [{"since": None, "until": NOW, "event_types": None}]


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2024-05-14T09:00:00.123456+00:00", datetime(2024, 5, 14, 9, 0, 0, 123456, tzinfo=timezone.utc)),
        ("2024-05-14T09:00:00.12345+00:00", datetime(2024, 5, 14, 9, 0, 0, 123450, tzinfo=timezone.utc)),
        ("2024-05-14T09:00:00.1+00:00", datetime(2024, 5, 14, 9, 0, 0, 100000, tzinfo=timezone.utc)),
        ("2024-05-14 09:00:00.5+00", datetime(2024, 5, 14, 9, 0, 0, 500000, tzinfo=timezone.utc)),
        ("2024-05-14T11:00:00.1234567+02", datetime(2024, 5, 14, 9, 0, 0, 123456, tzinfo=timezone.utc)),
        ("2024-05-14T04:00:00-0500", datetime(2024, 5, 14, 9, 0, tzinfo=timezone.utc)),
        ("2024-05-14T09:00:00Z", datetime(2024, 5, 14, 9, 0, tzinfo=timezone.utc)),
        ("2024-05-14 09:00:00", datetime(2024, 5, 14, 9, 0, tzinfo=timezone.utc)),
    ],
)
def test_parse_timestamp_accepts_postgres_output(raw: str, expected: datetime) -> None:
    assert parse_timestamp(raw) == expected


def test_trimmed_fraction_timestamps_are_counted() -> None:
    rows = [
        {"event_type": "menu_view", "created_at": "2024-05-14T09:00:00.123456+00:00"},
        {"event_type": "menu_view", "created_at": "2024-05-14T09:00:00.12345+00:00"},
        {"event_type": "menu_view", "created_at": "2024-05-14T09:00:00.1+00:00"},
        {"event_type": "menu_view", "created_at": "2024-05-14 09:00:00.5+00"},
    ]

    result = _compute(rows)

    assert result.kpis["menu_views"] == 4
    assert sum(point.count for point in result.views_series) == 4


@pytest.mark.parametrize("range_value", ["7d", "all"])
def test_events_after_now_are_ignored(range_value: str) -> None:
    rows = [
        _row("menu_view"),
        {"event_type": "menu_view", "created_at": "2024-05-20T09:00:00Z"},
        {"event_type": "menu_favorite", "created_at": "2024-05-15T14:31:00Z", "item_id": "item-hummus"},
    ]

    result = _compute(rows, range_value=range_value)

    assert result.kpis["menu_views"] == 1
    assert result.kpis["favorites"] == 0
    assert result.favorites_leaderboard == []
    assert sum(point.count for point in result.views_series) == result.kpis["menu_views"]


def test_favorites_leaderboard_keeps_top_ten() -> None:
    items = [{"id": f"item-{index:02d}", "name_en": f"Dish {index}"} for index in range(12)]
    rows = []
    for index in range(12):
        rows += [_row("menu_favorite", item_id=f"item-{index:02d}") for _ in range(index + 1)]

    result = _compute(rows, catalog=_catalog(items=items))

    assert len(result.favorites_leaderboard) == 10
    assert [entry.count for entry in result.favorites_leaderboard] == list(range(12, 2, -1))
    assert result.favorites_leaderboard[0].name == "Dish 11"


def test_featured_table_keeps_top_ten_by_views() -> None:
    items = [{"id": f"item-{index:02d}", "name_en": f"Dish {index}", "is_featured": True} for index in range(12)]
    rows = []
    for index in range(12):
        rows += [_row("item_view", item_id=f"item-{index:02d}") for _ in range(index + 1)]

    result = _compute(rows, catalog=_catalog(items=items))

    assert len(result.featured) == 10
    assert [entry.views for entry in result.featured] == list(range(12, 2, -1))


def test_top_search_terms_keep_top_ten() -> None:
    rows = []
    for index in range(12):
        rows += [_row("menu_search", metadata={"search_term": f"term {index:02d}"}) for _ in range(index + 1)]

    result = _compute(rows)

    assert len(result.top_search_terms) == 10
    assert result.top_search_terms[0].model_dump() == {"term": "term 11", "count": 12}
    assert result.top_search_terms[-1].term == "term 02"


def test_zero_result_list_is_capped_but_rate_counts_every_miss() -> None:
    rows = [_row("menu_search", metadata={"search_term": f"missing {index:02d}"}) for index in range(25)]
    rows.append(_row("menu_search", metadata={"search_term": "hummus"}))

    result = _compute(rows)

    assert len(result.search_zero_results) == 20
    assert result.search_zero_results[0].term == "missing 00"
    assert result.search_conversion.total_searches == 26
    assert result.search_conversion.zero_results == 25
    assert result.search_conversion.zero_rate == 96
