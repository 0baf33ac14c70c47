"""Narrow interfaces the orchestrator consumes from its collaborators."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from brand_monitor.content.models import (
    ClassificationRecord,
    ClassificationWrite,
    ContentQuery,
    ContentRecord,
    SourceWeight,
    TrackedTermView,
)

if TYPE_CHECKING:
    from brand_monitor.runs.models import RunView


class ContentStore(Protocol):
    def query(self, filters: ContentQuery) -> list[ContentRecord]: ...

    def count(self, filters: ContentQuery) -> int: ...

    def read(self, content_id: str) -> ContentRecord | None: ...

    def classifications_for(
        self,
        content_ids: Sequence[str],
    ) -> list[ClassificationRecord]: ...

    def save_classification(self, payload: ClassificationWrite) -> ClassificationRecord: ...


class TermStore(Protocol):
    def get_term(self, term_id: str) -> TrackedTermView | None: ...

    def list_terms(self, *, include_inactive: bool = False) -> list[TrackedTermView]: ...


class SourceWeightStore(Protocol):
    def list_source_weights(
        self,
        *,
        provider: str | None = None,
        include_inactive: bool = False,
    ) -> list[SourceWeight]: ...


@dataclass(slots=True, frozen=True)
class ClassificationResult:
    sentimiento: str
    categoria: str | None = None


class Classifier(Protocol):
    """Sentiment classifier; raises DependencyError when the backend fails."""

    def classify(self, record: ContentRecord) -> ClassificationResult: ...


@dataclass(slots=True, frozen=True)
class Artifact:
    """Rendered document handed to an ArtifactRenderer."""

    extension: str
    media_type: str
    body: str


class ArtifactRenderer(Protocol):
    """Persists a run artifact and returns a URL the caller can fetch."""

    def render(self, run: RunView, artifact: Artifact) -> str: ...
