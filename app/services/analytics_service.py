"""Aggregation of menu interaction events into the analytics dashboard report.

``compute_analytics`` is pure: it folds the event window once into local
tallies, then derives leaderboards, funnels and breakdowns from those tallies
and the catalog snapshot. ``load_analytics`` fetches its inputs.
"""

from __future__ import annotations

import asyncio
import logging
import math
import unicodedata
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from fastapi import HTTPException
from httpx import HTTPError as HttpxError
from postgrest import APIError as PostgrestAPIError

from app.schemas import (
    AllergenCount,
    AllergenHeatmapRow,
    AnalyticsResult,
    BranchPerformance,
    BreakdownComparison,
    CategoryPerformance,
    FavoriteEntry,
    FeaturedPerformance,
    Funnels,
    ItemPerformance,
    LabeledValue,
    ModifierEngagement,
    OffersEngagement,
    SearchConversion,
    SearchTermCount,
    SeriesPoint,
    TrendValue,
    WindowBounds,
)
from app.services.analytics_events import (
    ALLERGEN_KEYS,
    AllergenFilterPayload,
    AnalyticsEvent,
    CatalogSnapshot,
    EventType,
    ItemRef,
    MODIFIER_EVENTS,
    ModifierPayload,
    SearchPayload,
    UNKNOWN_ITEM,
    parse_events,
)
from app.services.analytics_range import RangeWindow, build_series, resolve_range

logger = logging.getLogger(__name__)

KPI_BY_EVENT: Dict[EventType, str] = {
    EventType.MENU_VIEW: "menu_views",
    EventType.CATEGORY_VIEW: "category_views",
    EventType.ITEM_VIEW: "item_views",
    EventType.ITEM_MODAL_OPEN: "item_modal_opens",
    EventType.MENU_FAVORITE: "favorites",
    EventType.MENU_UNFAVORITE: "unfavorites",
    EventType.MENU_FILTER: "filters",
    EventType.MENU_SEARCH: "searches",
    EventType.MENU_CACHED_LOAD: "snapshots",
    EventType.WHATSAPP_CLICK: "whatsapp_clicks",
    EventType.MICROSITE_VIEW: "microsite_views",
    EventType.MICROSITE_TO_MENU_CLICK: "microsite_menu_clicks",
    EventType.MENU_PRINT_VIEW: "print_views",
}

KPI_KEYS: Tuple[str, ...] = (
    "menu_views",
    "unique_sessions",
    "category_views",
    "item_views",
    "item_modal_opens",
    "favorites",
    "unfavorites",
    "filters",
    "searches",
    "snapshots",
    "whatsapp_clicks",
    "microsite_views",
    "microsite_menu_clicks",
    "print_views",
)

# Item-level events feeding the category and item tables.
ITEM_STAT_BY_EVENT: Dict[EventType, str] = {
    EventType.ITEM_VIEW: "views",
    EventType.ITEM_MODAL_OPEN: "modal_opens",
    EventType.MENU_FAVORITE: "favorites",
}

FEATURED_STAT_BY_EVENT: Dict[EventType, str] = {
    EventType.ITEM_VIEW: "views",
    EventType.ITEM_MODAL_OPEN: "opens",
    EventType.MENU_FAVORITE: "favorites",
}

MODIFIER_STAT_BY_EVENT: Dict[EventType, str] = {
    EventType.MODIFIER_GROUP_OPEN: "opens",
    EventType.MODIFIER_OPTION_SELECT: "selects",
    EventType.MODIFIER_OPTION_REMOVE: "removes",
}

POPULARITY_WEIGHTS = {"views": 1, "modal_opens": 3, "favorites": 5}

TOP_ITEMS_LIMIT = 15
FAVORITES_LIMIT = 10
FEATURED_LIMIT = 10
SEARCH_TERMS_LIMIT = 10
ZERO_RESULT_LIMIT = 20

DEVICE_LABELS: Tuple[Tuple[str, str], ...] = (
    ("mobile", "Mobile"),
    ("desktop", "Desktop"),
    ("other", "Tablet/Other"),
)
UNKNOWN_LANGUAGE = "unknown"


class AnalyticsUnavailableError(RuntimeError):
    """Raised when the event window itself cannot be loaded."""

    def __init__(self, message: str, *, status_code: int = 503):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class _EventAccumulator:
    """Running totals for one aggregation pass; never shared between calls."""

    kpis: Counter = field(default_factory=Counter)
    sessions: Set[str] = field(default_factory=set)
    categories: Dict[str, Counter] = field(default_factory=lambda: defaultdict(Counter))
    items: Dict[str, Counter] = field(default_factory=lambda: defaultdict(Counter))
    favorites: Counter = field(default_factory=Counter)
    featured: Dict[str, Counter] = field(default_factory=lambda: defaultdict(Counter))
    search_terms: Counter = field(default_factory=Counter)
    allergens: Counter = field(default_factory=Counter)
    modifiers: Dict[str, Counter] = field(default_factory=lambda: defaultdict(Counter))
    modifier_items: Dict[str, Counter] = field(default_factory=lambda: defaultdict(Counter))
    branches: Counter = field(default_factory=Counter)
    offers: Counter = field(default_factory=Counter)
    devices: Counter = field(default_factory=Counter)
    languages: Counter = field(default_factory=Counter)
    view_times: List[datetime] = field(default_factory=list)
    favorite_times: List[datetime] = field(default_factory=list)

    def add(self, event: AnalyticsEvent, catalog: CatalogSnapshot) -> None:
        if event.session_id:
            self.sessions.add(event.session_id)

        event_type = event.event_type
        if event_type is None:
            return

        kpi = KPI_BY_EVENT.get(event_type)
        if kpi:
            self.kpis[kpi] += 1

        if event_type is EventType.MENU_VIEW:
            self.view_times.append(event.created_at)
            self.devices[device_bucket(event.device_type)] += 1
            self.languages[event.language or UNKNOWN_LANGUAGE] += 1
            if event.branch_id:
                self.branches[event.branch_id] += 1
        elif event_type is EventType.MENU_FAVORITE:
            self.favorite_times.append(event.created_at)

        item_stat = ITEM_STAT_BY_EVENT.get(event_type)
        if item_stat and event.category_id:
            self.categories[event.category_id][item_stat] += 1
        if event.item_id:
            if item_stat:
                self.items[event.item_id][item_stat] += 1
            elif event_type is EventType.ITEM_FEATURED_VIEW:
                self.items[event.item_id]["featured_views"] += 1
            if event_type is EventType.MENU_FAVORITE:
                self.favorites[event.item_id] += 1
            featured_stat = FEATURED_STAT_BY_EVENT.get(event_type)
            if featured_stat and catalog.is_featured(event.item_id):
                self.featured[event.item_id][featured_stat] += 1

        category = catalog.category(event.category_id)
        if category is not None and category.is_offers:
            if event_type is EventType.CATEGORY_VIEW:
                self.offers["section_views"] += 1
            elif event_type is EventType.ITEM_VIEW:
                self.offers["item_views"] += 1

        payload = event.payload
        if isinstance(payload, SearchPayload):
            if payload.term:
                self.search_terms[payload.term] += 1
        elif isinstance(payload, AllergenFilterPayload):
            for allergen in payload.allergens:
                self.allergens[allergen] += 1
        elif isinstance(payload, ModifierPayload) and event_type in MODIFIER_EVENTS:
            stat = MODIFIER_STAT_BY_EVENT[event_type]
            self.modifiers[payload.modifier_id][stat] += 1
            if event.item_id:
                self.modifier_items[event.item_id][stat] += 1


def compute_analytics(
    events: Iterable[AnalyticsEvent],
    catalog: CatalogSnapshot,
    window: RangeWindow,
    *,
    previous_events: Optional[Iterable[AnalyticsEvent]] = None,
) -> AnalyticsResult:
    """Fold ``events`` into the dashboard report for ``window``.

    Events outside ``window.since`` .. ``window.now`` are ignored. ``previous_events``
    feeds the device/language comparison and is only used for bounded windows.
    """

    acc = _EventAccumulator()
    for event in events:
        if window.contains(event.created_at):
            acc.add(event, catalog)

    kpis = {key: acc.kpis.get(key, 0) for key in KPI_KEYS}
    kpis["unique_sessions"] = len(acc.sessions) or kpis["menu_views"]

    zero_results, zero_total = _zero_result_terms(acc.search_terms, catalog)
    devices = _device_breakdown(acc.devices)
    languages = _language_breakdown(acc.languages)

    comparison = None
    if window.previous is not None and previous_events is not None:
        comparison = _build_comparison(window, devices, languages, previous_events)

    return AnalyticsResult(
        range=window.range,
        since=window.since,
        window_days=window.window_days,
        generated_at=window.now,
        kpis=kpis,
        views_series=[SeriesPoint(**point) for point in build_series(acc.view_times, window)],
        favorites_series=[SeriesPoint(**point) for point in build_series(acc.favorite_times, window)],
        top_search_terms=[
            SearchTermCount(term=term, count=count)
            for term, count in _ranked(acc.search_terms.items())[:SEARCH_TERMS_LIMIT]
        ],
        search_zero_results=zero_results[:ZERO_RESULT_LIMIT],
        search_conversion=_search_conversion(kpis, zero_total),
        categories=_category_table(acc, catalog),
        top_items=_top_items(acc, catalog),
        favorites_leaderboard=_favorites_leaderboard(acc, catalog),
        featured=_featured_table(acc, catalog),
        allergens=_allergen_tally(acc.allergens),
        allergen_heatmap=build_allergen_heatmap(catalog),
        modifiers=_modifier_table(acc.modifiers, {group.id: group.name for group in catalog.modifier_groups}),
        modifier_items=_modifier_table(acc.modifier_items, {item.id: item.name for item in catalog.items}),
        funnels=_funnels(kpis),
        devices=devices,
        languages=languages,
        comparison=comparison,
        branches=_branch_table(acc.branches, catalog, kpis["menu_views"]),
        offers=OffersEngagement(
            section_views=acc.offers.get("section_views", 0),
            item_views=acc.offers.get("item_views", 0),
        ),
    )


def percentage(numerator: int, denominator: int) -> int:
    """Whole percentage rounded half up; 0 when there is nothing to divide by."""

    if denominator <= 0:
        return 0
    return int(math.floor(100 * numerator / denominator + 0.5))


def popularity_score(stats: Counter) -> int:
    return sum(stats.get(key, 0) * weight for key, weight in POPULARITY_WEIGHTS.items())


def device_bucket(device_type: Optional[str]) -> str:
    normalized = (device_type or "").lower()
    if normalized in ("mobile", "desktop"):
        return normalized
    return "other"


def normalize_search_text(value: Optional[str]) -> str:
    """Lower-case, strip diacritics and trim, as the public menu search does."""

    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value.lower())
    return "".join(char for char in decomposed if not unicodedata.combining(char)).strip()


def item_search_fields(item: ItemRef, catalog: CatalogSnapshot) -> Tuple[str, ...]:
    category = catalog.category(item.category_id)
    raw_fields = (
        item.name,
        item.name_ar,
        item.description,
        item.description_ar,
        category.name if category else None,
    )
    return tuple(text for text in map(normalize_search_text, raw_fields) if text)


def build_allergen_heatmap(catalog: CatalogSnapshot) -> List[AllergenHeatmapRow]:
    """Count, per category, the catalog items flagged with each allergen."""

    per_category: Dict[str, Counter] = defaultdict(Counter)
    totals: Counter = Counter()
    for item in catalog.items:
        if not item.category_id:
            continue
        totals[item.category_id] += 1
        for allergen in item.allergens:
            per_category[item.category_id][allergen] += 1

    return [
        AllergenHeatmapRow(
            id=category.id,
            name=category.name,
            total_items=totals.get(category.id, 0),
            counts={key: per_category[category.id].get(key, 0) for key in ALLERGEN_KEYS},
        )
        for category in catalog.categories
    ]


def _ranked(entries: Iterable[Tuple[str, int]]) -> List[Tuple[str, int]]:
    return sorted(entries, key=lambda entry: (-entry[1], entry[0]))


def _zero_result_terms(
    search_terms: Counter, catalog: CatalogSnapshot
) -> Tuple[List[SearchTermCount], int]:
    searchable = [item_search_fields(item, catalog) for item in catalog.items]
    misses: List[Tuple[str, int]] = []
    for term, count in search_terms.items():
        needle = normalize_search_text(term)
        if any(needle in text for fields in searchable for text in fields):
            continue
        misses.append((term, count))
    ranked = _ranked(misses)
    total = sum(count for _, count in ranked)
    return [SearchTermCount(term=term, count=count) for term, count in ranked], total


def _search_conversion(kpis: Dict[str, int], zero_total: int) -> SearchConversion:
    total = kpis["searches"]
    return SearchConversion(
        total_searches=total,
        zero_results=zero_total,
        zero_rate=percentage(zero_total, total),
        view_rate=percentage(kpis["item_views"], total),
        favorite_rate=percentage(kpis["favorites"], total),
    )


def _category_table(acc: _EventAccumulator, catalog: CatalogSnapshot) -> List[CategoryPerformance]:
    rows = [
        CategoryPerformance(
            id=category_id,
            name=catalog.category_name(category_id),
            views=stats["views"],
            modal_opens=stats["modal_opens"],
            favorites=stats["favorites"],
            engagement=percentage(stats["modal_opens"], stats["views"]),
        )
        for category_id, stats in acc.categories.items()
    ]
    return sorted(rows, key=lambda row: (-row.views, row.id))


def _top_items(acc: _EventAccumulator, catalog: CatalogSnapshot) -> List[ItemPerformance]:
    rows = [
        ItemPerformance(
            id=item_id,
            name=catalog.item_name(item_id),
            category=catalog.item_category_name(item_id),
            views=stats["views"],
            modal_opens=stats["modal_opens"],
            favorites=stats["favorites"],
            featured_views=stats["featured_views"],
            popularity=popularity_score(stats),
        )
        for item_id, stats in acc.items.items()
    ]
    rows.sort(key=lambda row: (-row.popularity, row.id))
    return rows[:TOP_ITEMS_LIMIT]


def _favorites_leaderboard(acc: _EventAccumulator, catalog: CatalogSnapshot) -> List[FavoriteEntry]:
    return [
        FavoriteEntry(
            id=item_id,
            name=catalog.item_name(item_id),
            category=catalog.item_category_name(item_id),
            count=count,
        )
        for item_id, count in _ranked(acc.favorites.items())[:FAVORITES_LIMIT]
    ]


def _featured_table(acc: _EventAccumulator, catalog: CatalogSnapshot) -> List[FeaturedPerformance]:
    rows = [
        FeaturedPerformance(
            id=item_id,
            name=catalog.item_name(item_id),
            views=stats["views"],
            opens=stats["opens"],
            favorites=stats["favorites"],
            engagement=percentage(stats["opens"], stats["views"]),
        )
        for item_id, stats in acc.featured.items()
    ]
    rows.sort(key=lambda row: (-row.views, row.id))
    return rows[:FEATURED_LIMIT]


def _allergen_tally(allergens: Counter) -> List[AllergenCount]:
    # Stable sort keeps the fixed allergen order among ties.
    rows = [AllergenCount(allergen=key, count=allergens.get(key, 0)) for key in ALLERGEN_KEYS]
    return sorted(rows, key=lambda row: -row.count)


def _modifier_table(tallies: Dict[str, Counter], names: Dict[str, str]) -> List[ModifierEngagement]:
    rows = [
        ModifierEngagement(
            id=key,
            name=names.get(key, UNKNOWN_ITEM),
            opens=stats["opens"],
            selects=stats["selects"],
            removes=stats["removes"],
        )
        for key, stats in tallies.items()
    ]
    return sorted(rows, key=lambda row: (-row.opens, row.id))


def _funnels(kpis: Dict[str, int]) -> Funnels:
    return Funnels(
        funnel_a=[
            LabeledValue(label="Menu views", value=kpis["menu_views"]),
            LabeledValue(label="Category clicks", value=kpis["category_views"]),
            LabeledValue(label="Item views", value=kpis["item_views"]),
            LabeledValue(label="Modal opens", value=kpis["item_modal_opens"]),
            LabeledValue(label="Favorites", value=kpis["favorites"]),
        ],
        funnel_b=[
            LabeledValue(label="Menu views", value=kpis["menu_views"]),
            LabeledValue(label="Filters applied", value=kpis["filters"]),
            LabeledValue(label="Item views", value=kpis["item_views"]),
        ],
    )


def _device_breakdown(devices: Counter) -> List[LabeledValue]:
    return [LabeledValue(label=label, value=devices.get(key, 0)) for key, label in DEVICE_LABELS]


def _language_breakdown(languages: Counter) -> List[LabeledValue]:
    return [LabeledValue(label=label, value=count) for label, count in _ranked(languages.items())]


def _build_comparison(
    window: RangeWindow,
    devices: List[LabeledValue],
    languages: List[LabeledValue],
    previous_events: Iterable[AnalyticsEvent],
) -> BreakdownComparison:
    previous = window.previous
    previous_devices: Counter = Counter()
    previous_languages: Counter = Counter()
    for event in previous_events:
        if event.event_type is not EventType.MENU_VIEW:
            continue
        if not previous.start <= event.created_at <= previous.end:
            continue
        previous_devices[device_bucket(event.device_type)] += 1
        previous_languages[event.language or UNKNOWN_LANGUAGE] += 1

    device_rows = [
        _trend(entry.label, entry.value, previous_devices.get(key, 0))
        for (key, _), entry in zip(DEVICE_LABELS, devices)
    ]
    current_languages = {entry.label: entry.value for entry in languages}
    labels = [entry.label for entry in languages]
    labels.extend(sorted(label for label in previous_languages if label not in current_languages))
    language_rows = [
        _trend(label, current_languages.get(label, 0), previous_languages.get(label, 0))
        for label in labels
    ]
    return BreakdownComparison(
        previous_window=WindowBounds(start=previous.start, end=previous.end),
        devices=device_rows,
        languages=language_rows,
    )


def _trend(label: str, current: int, previous: int) -> TrendValue:
    return TrendValue(label=label, current=current, previous=previous, delta=current - previous)


def _branch_table(branches: Counter, catalog: CatalogSnapshot, total_views: int) -> List[BranchPerformance]:
    names = {branch.id: branch.name for branch in catalog.branches}
    return [
        BranchPerformance(
            id=branch_id,
            name=names.get(branch_id, "Unknown branch"),
            views=views,
            share=percentage(views, total_views),
        )
        for branch_id, views in _ranked(branches.items())
    ]


# Failures we degrade on for catalog lookups; anything else is a bug and propagates.
_FETCH_ERRORS = (HTTPException, HttpxError, PostgrestAPIError, RuntimeError)


async def load_analytics(dao: Any, range_value: Optional[str], now: datetime) -> AnalyticsResult:
    """Fetch the event window and catalog for ``dao``'s restaurant and aggregate them.

    The reads run concurrently. A failed catalog read degrades to empty lookups;
    a failed event read raises ``AnalyticsUnavailableError``.
    """

    window = resolve_range(range_value, now)
    previous_fetch = (
        dao.fetch_events(
            window.previous.start,
            until=window.previous.end,
            event_types=[EventType.MENU_VIEW.value],
        )
        if window.previous is not None
        else _nothing()
    )
    (
        event_rows,
        previous_rows,
        category_rows,
        item_rows,
        modifier_rows,
        branch_rows,
    ) = await asyncio.gather(
        dao.fetch_events(window.since, until=window.now),
        previous_fetch,
        dao.fetch_categories(),
        dao.fetch_items(),
        dao.fetch_modifier_groups(),
        dao.fetch_branches(),
        return_exceptions=True,
    )

    if isinstance(event_rows, BaseException):
        logger.error(
            "Analytics events unavailable",
            extra={"restaurant_id": getattr(dao, "restaurant_id", None), "error": str(event_rows)},
        )
        if not isinstance(event_rows, _FETCH_ERRORS):
            raise event_rows
        status_code = event_rows.status_code if isinstance(event_rows, HTTPException) else 503
        raise AnalyticsUnavailableError(
            "Analytics events could not be loaded.", status_code=status_code
        ) from event_rows

    catalog = CatalogSnapshot.from_rows(
        categories=_rows_or_empty(category_rows, "categories"),
        items=_rows_or_empty(item_rows, "items"),
        modifier_groups=_rows_or_empty(modifier_rows, "modifier groups"),
        branches=_rows_or_empty(branch_rows, "branches"),
    )

    # Without the previous window the comparison is omitted rather than shown as all-new.
    previous_events = None
    if window.previous is not None and not _is_degraded(previous_rows, "previous window events"):
        previous_events = parse_events(previous_rows or [])

    events = parse_events(event_rows or [])
    result = compute_analytics(events, catalog, window, previous_events=previous_events)
    logger.info(
        "Analytics computed",
        extra={
            "restaurant_id": getattr(dao, "restaurant_id", None),
            "range": window.range,
            "events": len(events),
            "catalog_items": len(catalog.items),
        },
    )
    return result


def _is_degraded(result: Any, label: str) -> bool:
    if not isinstance(result, BaseException):
        return False
    if not isinstance(result, _FETCH_ERRORS):
        raise result
    logger.warning("Analytics %s unavailable, continuing without them: %s", label, result)
    return True


def _rows_or_empty(result: Any, label: str) -> Sequence[Dict[str, Any]]:
    if _is_degraded(result, label):
        return []
    return result or []


async def _nothing() -> None:
    return None


__all__ = [
    "AnalyticsUnavailableError",
    "build_allergen_heatmap",
    "compute_analytics",
    "device_bucket",
    "item_search_fields",
    "load_analytics",
    "normalize_search_text",
    "percentage",
    "popularity_score",
]
