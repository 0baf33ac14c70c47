"""Glue between the collaborator stores, the pure engine and the snapshot store."""

from __future__ import annotations

import logging

from brand_monitor.aggregation.engine import compute
from brand_monitor.aggregation.models import SnapshotView, Window
from brand_monitor.aggregation.repository import SnapshotRepository
from brand_monitor.config import AggregationSettings
from brand_monitor.content.contracts import ContentStore, SourceWeightStore, TermStore
from brand_monitor.content.models import ContentQuery

logger = logging.getLogger(__name__)


class KpiService:
    """Loads inputs, runs the engine and persists the resulting snapshot."""

    def __init__(
        self,
        *,
        content_store: ContentStore,
        term_store: TermStore,
        weight_store: SourceWeightStore,
        snapshots: SnapshotRepository,
        config: AggregationSettings,
    ) -> None:
        self.content_store = content_store
        self.term_store = term_store
        self.weight_store = weight_store
        self.snapshots = snapshots
        self.config = config

    def compute_snapshot(
        self,
        *,
        window: Window,
        source_type: str,
        formula_version: str | None = None,
    ) -> SnapshotView:
        """Compute and persist a new snapshot; earlier snapshots are left untouched."""

        version = formula_version or self.config.formula_version
        records = self.content_store.query(
            ContentQuery(
                source_type=source_type,
                window_start=window.start,
                window_end=window.end,
            ),
        )
        classifications = self.content_store.classifications_for(
            [record.content_id for record in records],
        )
        snapshot = compute(
            window,
            source_type,
            records,
            classifications,
            self.weight_store.list_source_weights(include_inactive=True),
            version,
            terms=self.term_store.list_terms(include_inactive=True),
            config=self.config,
        )
        stored = self.snapshots.save_snapshot(snapshot)
        logger.info(
            "KPI snapshot stored: snapshot_id=%s source_type=%s items=%d classified=%d "
            "insufficient=%s",
            stored.snapshot_id,
            source_type,
            snapshot.totals.items,
            snapshot.totals.classified_items,
            snapshot.insufficient_data,
        )
        return stored

    def latest_or_compute(
        self,
        *,
        window: Window,
        source_type: str,
        formula_version: str | None = None,
    ) -> SnapshotView:
        version = formula_version or self.config.formula_version
        existing = self.snapshots.latest_snapshot(
            window=window,
            source_type=source_type,
            formula_version=version,
        )
        if existing is not None:
            return existing
        return self.compute_snapshot(
            window=window,
            source_type=source_type,
            formula_version=version,
        )
