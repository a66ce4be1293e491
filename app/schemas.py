from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class AnalyticsModel(BaseModel):
    """Base for every analytics payload: camelCase on the wire, frozen in memory."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class SeriesPoint(AnalyticsModel):
    date: str
    count: int


class SearchTermCount(AnalyticsModel):
    term: str
    count: int


class SearchConversion(AnalyticsModel):
    total_searches: int
    zero_results: int
    zero_rate: int
    view_rate: int
    favorite_rate: int


class CategoryPerformance(AnalyticsModel):
    id: str
    name: str
    views: int
    modal_opens: int
    favorites: int
    engagement: int


class ItemPerformance(AnalyticsModel):
    id: str
    name: str
    category: str
    views: int
    modal_opens: int
    favorites: int
    featured_views: int
    popularity: int


class FavoriteEntry(AnalyticsModel):
    id: str
    name: str
    category: str
    count: int


class FeaturedPerformance(AnalyticsModel):
    id: str
    name: str
    views: int
    opens: int
    favorites: int
    engagement: int


class AllergenCount(AnalyticsModel):
    allergen: str
    count: int


class AllergenHeatmapRow(AnalyticsModel):
    id: str
    name: str
    total_items: int
    counts: Dict[str, int]


class ModifierEngagement(AnalyticsModel):
    id: str
    name: str
    opens: int
    selects: int
    removes: int


class LabeledValue(AnalyticsModel):
    label: str
    value: int


class Funnels(AnalyticsModel):
    funnel_a: List[LabeledValue]
    funnel_b: List[LabeledValue]


class TrendValue(AnalyticsModel):
    label: str
    current: int
    previous: int
    delta: int


class WindowBounds(AnalyticsModel):
    start: datetime
    end: datetime


class BreakdownComparison(AnalyticsModel):
    previous_window: WindowBounds
    devices: List[TrendValue]
    languages: List[TrendValue]


class BranchPerformance(AnalyticsModel):
    id: str
    name: str
    views: int
    share: int


class OffersEngagement(AnalyticsModel):
    section_views: int
    item_views: int


class AnalyticsResult(AnalyticsModel):
    range: str
    since: Optional[datetime] = None
    window_days: int
    generated_at: datetime
    kpis: Dict[str, int]
    views_series: List[SeriesPoint] = Field(default_factory=list)
    favorites_series: List[SeriesPoint] = Field(default_factory=list)
    top_search_terms: List[SearchTermCount] = Field(default_factory=list)
    search_zero_results: List[SearchTermCount] = Field(default_factory=list)
    search_conversion: SearchConversion
    categories: List[CategoryPerformance] = Field(default_factory=list)
    top_items: List[ItemPerformance] = Field(default_factory=list)
    favorites_leaderboard: List[FavoriteEntry] = Field(default_factory=list)
    featured: List[FeaturedPerformance] = Field(default_factory=list)
    allergens: List[AllergenCount] = Field(default_factory=list)
    allergen_heatmap: List[AllergenHeatmapRow] = Field(default_factory=list)
    modifiers: List[ModifierEngagement] = Field(default_factory=list)
    modifier_items: List[ModifierEngagement] = Field(default_factory=list)
    funnels: Funnels
    devices: List[LabeledValue] = Field(default_factory=list)
    languages: List[LabeledValue] = Field(default_factory=list)
    comparison: Optional[BreakdownComparison] = None
    branches: List[BranchPerformance] = Field(default_factory=list)
    offers: OffersEngagement
