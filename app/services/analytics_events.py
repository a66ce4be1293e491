"""Typed view over the raw ``analytics_events`` rows and the menu catalog.

Rows come straight from PostgREST, so every field is optional and the
``metadata`` column is a free-form JSON bag whose keys depend on the event
type. Parsing happens once, here, so the aggregation code can branch on the
payload type instead of probing dictionary keys.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)

ALLERGEN_KEYS: Tuple[str, ...] = ("dairy", "nuts", "eggs", "shellfish", "soy", "sesame")
DEFAULT_MODIFIER_KEY = "group"
UNKNOWN_ITEM = "Unknown"
UNCATEGORIZED = "Uncategorized"


class EventType(str, Enum):
    MENU_VIEW = "menu_view"
    CATEGORY_VIEW = "category_view"
    ITEM_VIEW = "item_view"
    ITEM_MODAL_OPEN = "item_modal_open"
    ITEM_MODAL_CLOSE = "item_modal_close"
    ITEM_FEATURED_VIEW = "item_featured_view"
    MENU_FAVORITE = "menu_favorite"
    MENU_UNFAVORITE = "menu_unfavorite"
    MENU_FILTER = "menu_filter"
    MENU_SEARCH = "menu_search"
    MENU_CACHED_LOAD = "menu_cached_load"
    ALLERGEN_FILTER_APPLY = "allergen_filter_apply"
    FEATURED_FILTER_APPLY = "featured_filter_apply"
    FAVORITES_FILTER_APPLY = "favorites_filter_apply"
    FILTER_TOGGLE = "filter_toggle"
    MODIFIER_GROUP_OPEN = "modifier_group_open"
    MODIFIER_OPTION_SELECT = "modifier_option_select"
    MODIFIER_OPTION_REMOVE = "modifier_option_remove"
    WHATSAPP_CLICK = "whatsapp_click"
    MICROSITE_VIEW = "microsite_view"
    MICROSITE_TO_MENU_CLICK = "microsite_to_menu_click"
    MENU_PRINT_VIEW = "menu_print_view"

    @classmethod
    def lookup(cls, value: Any) -> Optional["EventType"]:
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip())
        except ValueError:
            return None


MODIFIER_EVENTS = frozenset(
    {
        EventType.MODIFIER_GROUP_OPEN,
        EventType.MODIFIER_OPTION_SELECT,
        EventType.MODIFIER_OPTION_REMOVE,
    }
)


@dataclass(frozen=True)
class EmptyPayload:
    """Marker for event types that carry no metadata we aggregate."""


@dataclass(frozen=True)
class SearchPayload:
    term: Optional[str]


@dataclass(frozen=True)
class AllergenFilterPayload:
    allergens: FrozenSet[str]


@dataclass(frozen=True)
class ModifierPayload:
    modifier_id: str


EventPayload = Union[EmptyPayload, SearchPayload, AllergenFilterPayload, ModifierPayload]

_EMPTY = EmptyPayload()


@dataclass(frozen=True)
class AnalyticsEvent:
    """A single interaction logged by the public menu.

    ``event_type`` is ``None`` for tags this version does not know about; such
    events are kept so their session id still counts, but feed no metric.
    """

    event_type: Optional[EventType]
    created_at: datetime
    session_id: Optional[str] = None
    branch_id: Optional[str] = None
    category_id: Optional[str] = None
    item_id: Optional[str] = None
    device_type: Optional[str] = None
    language: Optional[str] = None
    payload: EventPayload = _EMPTY


def parse_event(row: Mapping[str, Any]) -> Optional[AnalyticsEvent]:
    """Build an ``AnalyticsEvent`` from a database row, or ``None`` if unusable."""

    created_at = parse_timestamp(row.get("created_at"))
    if created_at is None:
        logger.debug("Skipping analytics event without a valid created_at: %r", row.get("created_at"))
        return None

    event_type = EventType.lookup(row.get("event_type"))
    metadata = _coerce_metadata(row.get("metadata"))
    return AnalyticsEvent(
        event_type=event_type,
        created_at=created_at,
        session_id=_clean_str(row.get("session_id")),
        branch_id=_clean_str(row.get("branch_id")),
        category_id=_clean_str(row.get("category_id")),
        item_id=_clean_str(row.get("item_id")),
        device_type=_clean_str(row.get("device_type")),
        language=_clean_str(row.get("language")),
        payload=_build_payload(event_type, metadata),
    )


def parse_events(rows: List[Mapping[str, Any]]) -> List[AnalyticsEvent]:
    events: List[AnalyticsEvent] = []
    for row in rows:
        if not isinstance(row, Mapping):
            continue
        event = parse_event(row)
        if event is not None:
            events.append(event)
    return events


def _build_payload(event_type: Optional[EventType], metadata: Dict[str, Any]) -> EventPayload:
    if event_type is EventType.MENU_SEARCH:
        raw_term = metadata.get("search_term")
        term = raw_term.strip().lower() if isinstance(raw_term, str) else ""
        return SearchPayload(term=term or None)
    if event_type is EventType.ALLERGEN_FILTER_APPLY:
        flagged = frozenset(key for key in ALLERGEN_KEYS if metadata.get(key))
        return AllergenFilterPayload(allergens=flagged)
    if event_type in MODIFIER_EVENTS:
        modifier_id = metadata.get("modifierId")
        return ModifierPayload(
            modifier_id=str(modifier_id) if modifier_id not in (None, "") else DEFAULT_MODIFIER_KEY,
        )
    return _EMPTY


def _coerce_metadata(value: Any) -> Dict[str, Any]:
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, str) and value.strip():
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        if isinstance(parsed, dict):
            return parsed
    return {}


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# Postgres drops trailing zeros from fractions and may print offsets as "+00".
_TIMESTAMP_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(?::\d{2})?)"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<offset>Z|[+-]\d{2}(?::?\d{2})?)?$"
)


def _normalize_timestamp_text(text: str) -> str:
    match = _TIMESTAMP_RE.match(text)
    if not match:
        return text
    normalized = match.group("base")
    fraction = match.group("fraction")
    if fraction:
        normalized += "." + fraction[:6].ljust(6, "0")
    offset = match.group("offset")
    if offset == "Z":
        normalized += "+00:00"
    elif offset:
        digits = offset[1:].replace(":", "")
        normalized += f"{offset[0]}{digits[:2]}:{digits[2:4] or '00'}"
    return normalized


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse PostgREST timestamps into aware UTC datetimes.

    Accepts ``Z`` suffixes, short ``+HH`` offsets and fractions of any length.
    Naive values are taken as UTC.
    """

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(_normalize_timestamp_text(value.strip()))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class CategoryRef:
    id: str
    name: str
    name_ar: Optional[str] = None
    is_offers: bool = False


@dataclass(frozen=True)
class ItemRef:
    id: str
    name: str
    category_id: Optional[str] = None
    is_featured: bool = False
    name_ar: Optional[str] = None
    description: Optional[str] = None
    description_ar: Optional[str] = None
    allergens: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class ModifierGroupRef:
    id: str
    name: str


@dataclass(frozen=True)
class BranchRef:
    id: str
    name: str


def parse_category(row: Mapping[str, Any]) -> Optional[CategoryRef]:
    identifier = _clean_str(row.get("id"))
    if not identifier:
        return None
    return CategoryRef(
        id=identifier,
        name=_clean_str(row.get("name_en")) or _clean_str(row.get("name")) or UNCATEGORIZED,
        name_ar=_clean_str(row.get("name_ar")),
        is_offers=bool(row.get("is_offers")),
    )


def parse_item(row: Mapping[str, Any]) -> Optional[ItemRef]:
    identifier = _clean_str(row.get("id"))
    if not identifier:
        return None
    allergens = frozenset(key for key in ALLERGEN_KEYS if row.get(f"contains_{key}"))
    return ItemRef(
        id=identifier,
        name=_clean_str(row.get("name_en")) or _clean_str(row.get("name")) or UNKNOWN_ITEM,
        category_id=_clean_str(row.get("category_id")),
        is_featured=bool(row.get("is_featured")),
        name_ar=_clean_str(row.get("name_ar")),
        description=_clean_str(row.get("description_en")),
        description_ar=_clean_str(row.get("description_ar")),
        allergens=allergens,
    )


def parse_modifier_group(row: Mapping[str, Any]) -> Optional[ModifierGroupRef]:
    identifier = _clean_str(row.get("id"))
    if not identifier:
        return None
    return ModifierGroupRef(id=identifier, name=_clean_str(row.get("name")) or "Modifier")


def parse_branch(row: Mapping[str, Any]) -> Optional[BranchRef]:
    identifier = _clean_str(row.get("id"))
    if not identifier:
        return None
    return BranchRef(id=identifier, name=_clean_str(row.get("name")) or "Unknown branch")


@dataclass(frozen=True)
class CatalogSnapshot:
    """Read-only lookups over the tenant's menu used while aggregating."""

    categories: Tuple[CategoryRef, ...] = ()
    items: Tuple[ItemRef, ...] = ()
    modifier_groups: Tuple[ModifierGroupRef, ...] = ()
    branches: Tuple[BranchRef, ...] = ()
    _categories_by_id: Dict[str, CategoryRef] = field(init=False, repr=False, compare=False)
    _items_by_id: Dict[str, ItemRef] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_categories_by_id", {c.id: c for c in self.categories})
        object.__setattr__(self, "_items_by_id", {i.id: i for i in self.items})

    @classmethod
    def from_rows(
        cls,
        *,
        categories: List[Mapping[str, Any]] = (),
        items: List[Mapping[str, Any]] = (),
        modifier_groups: List[Mapping[str, Any]] = (),
        branches: List[Mapping[str, Any]] = (),
    ) -> "CatalogSnapshot":
        return cls(
            categories=tuple(ref for ref in map(parse_category, categories) if ref),
            items=tuple(ref for ref in map(parse_item, items) if ref),
            modifier_groups=tuple(ref for ref in map(parse_modifier_group, modifier_groups) if ref),
            branches=tuple(ref for ref in map(parse_branch, branches) if ref),
        )

    def item(self, item_id: Optional[str]) -> Optional[ItemRef]:
        if not item_id:
            return None
        return self._items_by_id.get(item_id)

    def category(self, category_id: Optional[str]) -> Optional[CategoryRef]:
        if not category_id:
            return None
        return self._categories_by_id.get(category_id)

    def item_name(self, item_id: Optional[str]) -> str:
        item = self.item(item_id)
        return item.name if item else UNKNOWN_ITEM

    def category_name(self, category_id: Optional[str]) -> str:
        category = self.category(category_id)
        return category.name if category else UNCATEGORIZED

    def item_category_name(self, item_id: Optional[str]) -> str:
        item = self.item(item_id)
        if not item or not item.category_id:
            return UNCATEGORIZED
        return self.category_name(item.category_id)

    def is_featured(self, item_id: Optional[str]) -> bool:
        item = self.item(item_id)
        return bool(item and item.is_featured)


__all__ = [
    "ALLERGEN_KEYS",
    "AllergenFilterPayload",
    "AnalyticsEvent",
    "BranchRef",
    "CatalogSnapshot",
    "CategoryRef",
    "EmptyPayload",
    "EventType",
    "ItemRef",
    "ModifierGroupRef",
    "ModifierPayload",
    "SearchPayload",
    "parse_event",
    "parse_events",
    "parse_timestamp",
]
