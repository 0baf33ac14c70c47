"""Filesystem artifact renderer for report and export runs."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from brand_monitor.content.contracts import Artifact
from brand_monitor.errors import DependencyError
from brand_monitor.runs.models import RunView

logger = logging.getLogger(__name__)


class FileArtifactRenderer:
    """Write ``<artifacts_dir>/<kind>/<run_id>.<ext>`` and return a ``file://`` URL."""

    def __init__(self, artifacts_dir: Path) -> None:
        self.artifacts_dir = artifacts_dir

    def render(self, run: RunView, artifact: Artifact) -> str:
        target = self.artifacts_dir / run.kind.value / f"{run.run_id}.{artifact.extension}"
        tmp_path = target.with_suffix(target.suffix + ".tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(artifact.body, "utf-8")
            os.replace(tmp_path, target)
        except OSError as error:
            raise DependencyError(
                f"Failed to write artifact for run {run.run_id}: {error}",
                transient=True,
            ) from error
        logger.info(
            "Artifact written: run_id=%s media_type=%s bytes=%d",
            run.run_id,
            artifact.media_type,
            len(artifact.body.encode("utf-8")),
        )
        return target.resolve().as_uri()
