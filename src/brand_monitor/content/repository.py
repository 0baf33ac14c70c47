"""SQLite implementation of the content, term and source-weight stores."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from brand_monitor.content.models import (
    ClassificationRecord,
    ClassificationWrite,
    ContentCreate,
    ContentQuery,
    ContentRecord,
    ContentState,
    FeedItem,
    FeedPage,
    SourceWeight,
    TermCreate,
    TrackedTermView,
    effective_classification,
)
from brand_monitor.errors import ConflictError, NotFoundError, ValidationError
from brand_monitor.storage.common import (
    SqliteRepository,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
)
from brand_monitor.storage.sqlmodel_models import (
    Classification,
    ContentItem,
    SourceWeightRow,
    TrackedTerm,
)

logger = logging.getLogger(__name__)


class ContentRepository(SqliteRepository):
    """Content persistence facade backed by SQLModel + SQLite."""

    def add_term(self, payload: TermCreate) -> TrackedTermView:
        """Register a tracked term."""

        name = payload.name.strip()
        if not name:
            raise ValidationError("Term name must not be empty.")
        if payload.max_articles_per_run <= 0:
            raise ValidationError("max_articles_per_run must be > 0.")
        with Session(self.engine) as session:
            row = TrackedTerm(
                term_id=payload.term_id or str(uuid4()),
                tenant_id=self.tenant_id,
                name=name,
                scope=payload.scope.value if payload.scope is not None else None,
                is_active=payload.is_active,
                max_articles_per_run=payload.max_articles_per_run,
                created_at=to_db_datetime(self._now()),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ConflictError(f"Tracked term already exists: {name}") from error
            session.refresh(row)
            return _to_term_view(row)

    def get_term(self, term_id: str) -> TrackedTermView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(TrackedTerm).where(
                    TrackedTerm.term_id == term_id,
                    TrackedTerm.tenant_id == self.tenant_id,
                ),
            ).one_or_none()
        return _to_term_view(row) if row is not None else None

    def list_terms(self, *, include_inactive: bool = False) -> list[TrackedTermView]:
        with Session(self.engine) as session:
            statement = (
                select(TrackedTerm)
                .where(TrackedTerm.tenant_id == self.tenant_id)
                .order_by(col(TrackedTerm.name).asc())
            )
            if not include_inactive:
                statement = statement.where(col(TrackedTerm.is_active).is_(True))
            rows = session.exec(statement).all()
        return [_to_term_view(row) for row in rows]

    def add_content(self, payload: ContentCreate) -> ContentRecord:
        """Store one content record."""

        now = to_db_datetime(self._now())
        with Session(self.engine) as session:
            row = ContentItem(
                content_id=payload.content_id or str(uuid4()),
                tenant_id=self.tenant_id,
                term_id=payload.term_id,
                source_type=payload.source_type.value,
                provider=payload.provider,
                source_name=payload.source_name,
                source_id=payload.source_id,
                state=payload.state.value,
                title=payload.title,
                summary=payload.summary,
                content=payload.content,
                canonical_url=payload.canonical_url,
                image_url=payload.image_url,
                language=payload.language,
                category=payload.category,
                source_score=payload.source_score,
                published_at=(
                    to_db_datetime(payload.published_at)
                    if payload.published_at is not None
                    else None
                ),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_content_record(row)

    def set_content_state(self, *, content_id: str, state: ContentState) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(ContentItem).where(
                    ContentItem.content_id == content_id,
                    ContentItem.tenant_id == self.tenant_id,
                ),
            ).one_or_none()
            if row is None:
                return False
            row.state = state.value
            row.updated_at = to_db_datetime(self._now())
            session.add(row)
            session.commit()
            return True

    def read(self, content_id: str) -> ContentRecord | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ContentItem).where(
                    ContentItem.content_id == content_id,
                    ContentItem.tenant_id == self.tenant_id,
                ),
            ).one_or_none()
        return _to_content_record(row) if row is not None else None

    def query(self, filters: ContentQuery) -> list[ContentRecord]:
        """Records matching the filters, newest first."""

        effective_at = func.coalesce(col(ContentItem.published_at), col(ContentItem.created_at))
        with Session(self.engine) as session:
            statement = _apply_filters(select(ContentItem), filters, self.tenant_id).order_by(
                effective_at.desc(),
                col(ContentItem.content_id).desc(),
            )
            if filters.limit is not None:
                statement = statement.limit(filters.limit)
            rows = session.exec(statement).all()
        return [_to_content_record(row) for row in rows]

    def count(self, filters: ContentQuery) -> int:
        with Session(self.engine) as session:
            statement = _apply_filters(
                select(func.count()).select_from(ContentItem),
                filters,
                self.tenant_id,
            )
            total = session.exec(statement).one()
        if filters.limit is not None:
            return min(int(total), filters.limit)
        return int(total)

    def classifications_for(self, content_ids: Sequence[str]) -> list[ClassificationRecord]:
        if not content_ids:
            return []
        with Session(self.engine) as session:
            rows = session.exec(
                select(Classification)
                .where(
                    Classification.tenant_id == self.tenant_id,
                    col(Classification.content_id).in_(list(content_ids)),
                )
                .order_by(col(Classification.created_at).asc(), col(Classification.id).asc()),
            ).all()
        return [_to_classification_record(row) for row in rows]

    def save_classification(self, payload: ClassificationWrite) -> ClassificationRecord:
        with Session(self.engine) as session:
            row = Classification(
                content_id=payload.content_id,
                tenant_id=self.tenant_id,
                sentimiento=payload.sentimiento,
                categoria=payload.categoria,
                is_override=payload.is_override,
                prompt_version=payload.prompt_version,
                created_by=payload.created_by,
                created_at=to_db_datetime(self._now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_classification_record(row)

    def set_source_weight(
        self,
        *,
        provider: str,
        source_name: str | None,
        weight: float,
        is_active: bool = True,
    ) -> SourceWeight:
        """Upsert a weight for (provider, source_name); takes effect on the next computation."""

        normalized_provider = provider.strip()
        normalized_source = source_name.strip() if source_name else None
        if not normalized_provider:
            raise ValidationError("provider must not be empty.")
        if not 0 <= weight <= 1:
            raise ValidationError(f"Source weight must be within 0..1, got {weight!r}.")

        now = to_db_datetime(self._now())
        with Session(self.engine) as session:
            statement = select(SourceWeightRow).where(
                SourceWeightRow.tenant_id == self.tenant_id,
                func.lower(col(SourceWeightRow.provider)) == normalized_provider.lower(),
            )
            if normalized_source is None:
                statement = statement.where(col(SourceWeightRow.source_name).is_(None))
            else:
                statement = statement.where(
                    func.lower(col(SourceWeightRow.source_name)) == normalized_source.lower(),
                )
            row = session.exec(statement.limit(1)).first()
            if row is None:
                row = SourceWeightRow(
                    tenant_id=self.tenant_id,
                    provider=normalized_provider,
                    source_name=normalized_source,
                    weight=weight,
                    is_active=is_active,
                    updated_at=now,
                )
            else:
                row.weight = weight
                row.is_active = is_active
                row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info(
                "Source weight set: provider=%s source_name=%s weight=%s active=%s",
                row.provider,
                row.source_name,
                row.weight,
                row.is_active,
            )
            return _to_source_weight(row)

    def list_source_weights(
        self,
        *,
        provider: str | None = None,
        include_inactive: bool = False,
    ) -> list[SourceWeight]:
        with Session(self.engine) as session:
            statement = (
                select(SourceWeightRow)
                .where(SourceWeightRow.tenant_id == self.tenant_id)
                .order_by(col(SourceWeightRow.updated_at).desc(), col(SourceWeightRow.id).desc())
            )
            if provider is not None:
                statement = statement.where(
                    func.lower(col(SourceWeightRow.provider)) == provider.strip().lower(),
                )
            if not include_inactive:
                statement = statement.where(col(SourceWeightRow.is_active).is_(True))
            rows = session.exec(statement).all()
        return [_to_source_weight(row) for row in rows]

    def feed(self, *, term_id: str, limit: int, page_cap: int = 50) -> FeedPage:
        """Most recent active records for one term.

        Page size is ``min(limit, term.max_articles_per_run, page_cap)``; ties on the
        timestamp are broken by content id so pages are stable.
        """

        if limit <= 0:
            raise ValidationError("limit must be > 0.")
        term = self.get_term(term_id)
        if term is None:
            raise NotFoundError(f"Tracked term not found: {term_id}")

        page_size = max(1, min(limit, term.max_articles_per_run, page_cap))
        records = self.query(
            ContentQuery(term_ids=(term_id,), limit=page_size),
        )
        by_content: dict[str, list[ClassificationRecord]] = {}
        for item in self.classifications_for([record.content_id for record in records]):
            by_content.setdefault(item.content_id, []).append(item)
        return FeedPage(
            term=term,
            page_size=page_size,
            items=[
                FeedItem(
                    record=record,
                    classification=effective_classification(
                        by_content.get(record.content_id, []),
                    ),
                )
                for record in records
            ],
        )


def _apply_filters(statement, filters: ContentQuery, tenant_id: str):  # noqa: ANN001, ANN202
    effective_at = func.coalesce(col(ContentItem.published_at), col(ContentItem.created_at))
    statement = statement.where(ContentItem.tenant_id == tenant_id)
    if filters.source_type is not None:
        statement = statement.where(ContentItem.source_type == filters.source_type)
    if filters.term_ids:
        statement = statement.where(col(ContentItem.term_id).in_(list(filters.term_ids)))
    if filters.states:
        statement = statement.where(col(ContentItem.state).in_(list(filters.states)))
    if filters.window_start is not None:
        statement = statement.where(effective_at >= to_db_datetime(filters.window_start))
    if filters.window_end is not None:
        statement = statement.where(effective_at < to_db_datetime(filters.window_end))
    return statement


def _to_term_view(row: TrackedTerm) -> TrackedTermView:
    return TrackedTermView(
        term_id=row.term_id,
        name=row.name,
        scope=row.scope,
        is_active=row.is_active,
        max_articles_per_run=row.max_articles_per_run,
    )


def _to_content_record(row: ContentItem) -> ContentRecord:
    return ContentRecord(
        content_id=row.content_id,
        term_id=row.term_id,
        source_type=row.source_type,
        provider=row.provider,
        source_name=row.source_name,
        state=row.state,
        title=row.title,
        canonical_url=row.canonical_url,
        published_at=optional_utc(row.published_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        category=row.category,
        summary=row.summary,
        content=row.content,
        source_id=row.source_id,
        image_url=row.image_url,
        language=row.language,
        source_score=row.source_score,
    )


def _to_classification_record(row: Classification) -> ClassificationRecord:
    return ClassificationRecord(
        content_id=row.content_id,
        sentimiento=row.sentimiento,
        categoria=row.categoria,
        is_override=row.is_override,
        created_at=to_utc_aware_datetime(row.created_at),
        classification_id=row.id,
        prompt_version=row.prompt_version,
    )


def _to_source_weight(row: SourceWeightRow) -> SourceWeight:
    return SourceWeight(
        provider=row.provider,
        source_name=row.source_name,
        weight=row.weight,
        is_active=row.is_active,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
