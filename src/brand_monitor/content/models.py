"""Value types for content records, tracked terms and source weights."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

NEWS_FEED_LIMIT = 2


class SourceType(str, Enum):
    NEWS = "news"
    SOCIAL = "social"


class ContentState(str, Enum):
    """Editorial state; only active records count towards KPIs."""

    ACTIVE = "active"
    HIDDEN = "hidden"
    ARCHIVED = "archived"


class TermScope(str, Enum):
    BRAND = "brand"
    COMPETITOR = "competitor"


@dataclass(slots=True, frozen=True)
class TrackedTermView:
    term_id: str
    name: str
    scope: str | None
    is_active: bool
    max_articles_per_run: int


@dataclass(slots=True)
class TermCreate:
    """Input payload for registering a tracked term."""

    name: str
    scope: TermScope | None = None
    is_active: bool = True
    max_articles_per_run: int = NEWS_FEED_LIMIT
    term_id: str | None = None


@dataclass(slots=True, frozen=True)
class ContentRecord:
    """Ingested content item as the KPI engine sees it."""

    content_id: str
    term_id: str | None
    source_type: str
    provider: str
    source_name: str | None
    state: str
    title: str
    canonical_url: str
    published_at: datetime | None
    created_at: datetime
    updated_at: datetime
    category: str | None = None
    summary: str | None = None
    content: str | None = None
    source_id: str | None = None
    image_url: str | None = None
    language: str | None = None
    source_score: float | None = None

    @property
    def effective_at(self) -> datetime:
        """Timestamp used for windowing and feed ordering."""

        return self.published_at or self.created_at


@dataclass(slots=True)
class ContentCreate:
    """Input payload for storing one content record."""

    source_type: SourceType
    provider: str
    title: str
    canonical_url: str
    term_id: str | None = None
    source_name: str | None = None
    source_id: str | None = None
    state: ContentState = ContentState.ACTIVE
    summary: str | None = None
    content: str | None = None
    image_url: str | None = None
    language: str | None = None
    category: str | None = None
    source_score: float | None = None
    published_at: datetime | None = None
    content_id: str | None = None


@dataclass(slots=True, frozen=True)
class ClassificationRecord:
    content_id: str
    sentimiento: str | None
    categoria: str | None
    is_override: bool
    created_at: datetime
    classification_id: int | None = None
    prompt_version: str | None = None


@dataclass(slots=True)
class ClassificationWrite:
    content_id: str
    sentimiento: str | None
    categoria: str | None = None
    is_override: bool = False
    prompt_version: str | None = None
    created_by: str = "system"


@dataclass(slots=True, frozen=True)
class SourceWeight:
    """Quality weight; a null source_name is the provider-wide default."""

    provider: str
    source_name: str | None
    weight: float
    is_active: bool
    updated_at: datetime


@dataclass(slots=True)
class ContentQuery:
    """Filter set shared by analysis, export and report handlers."""

    source_type: str | None = None
    term_ids: tuple[str, ...] = ()
    states: tuple[str, ...] = (ContentState.ACTIVE.value,)
    window_start: datetime | None = None
    window_end: datetime | None = None
    limit: int | None = None


@dataclass(slots=True)
class FeedItem:
    record: ContentRecord
    classification: ClassificationRecord | None


@dataclass(slots=True)
class FeedPage:
    """One page of the per-term feed."""

    term: TrackedTermView
    page_size: int
    items: list[FeedItem] = field(default_factory=list)


def effective_classification(
    classifications: list[ClassificationRecord],
) -> ClassificationRecord | None:
    """Override wins; otherwise the most recent classification."""

    if not classifications:
        return None
    overrides = [item for item in classifications if item.is_override]
    pool = overrides or classifications
    return max(
        pool,
        key=lambda item: (item.created_at, item.classification_id or 0),
    )
