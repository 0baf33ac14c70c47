"""Subprocess-based sentiment classifier.

The command receives one content record as JSON on stdin and must print a JSON
object with at least ``sentimiento`` (and optionally ``categoria``) on stdout.
"""

from __future__ import annotations

import json
import os
import shlex
import subprocess
from typing import Any

from brand_monitor.content.contracts import ClassificationResult
from brand_monitor.content.models import ContentRecord
from brand_monitor.errors import DependencyError

_STDERR_TAIL_CHARS = 500


class CommandClassifier:
    """Run ``command_template`` once per record.

    ``{content_id}`` and ``{provider}`` placeholders are shell-quoted before the
    template is split into argv.
    """

    def __init__(self, *, command_template: str, timeout_seconds: float) -> None:
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds

    def classify(self, record: ContentRecord) -> ClassificationResult:
        run_args = _build_run_args(self.command_template, record)
        env = os.environ.copy()
        env["BRAND_MONITOR_CONTENT_ID"] = record.content_id
        try:
            completed = subprocess.run(  # noqa: S603
                run_args,
                input=json.dumps(_record_payload(record), ensure_ascii=False),
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                env=env,
                check=False,
            )
        except FileNotFoundError as error:
            raise DependencyError(
                f"Classifier command not found: {run_args[0]}",
                transient=False,
            ) from error
        except subprocess.TimeoutExpired as error:
            raise DependencyError(
                f"Classifier timed out after {self.timeout_seconds}s "
                f"(content_id={record.content_id})",
                transient=True,
            ) from error
        except OSError as error:
            raise DependencyError(f"Classifier failed to start: {error}", transient=True) from error

        if completed.returncode != 0:
            raise DependencyError(
                f"Classifier exited with code {completed.returncode}: "
                f"{completed.stderr.strip()[-_STDERR_TAIL_CHARS:]}",
                transient=True,
            )
        return _parse_result(completed.stdout)


def _build_run_args(command_template: str, record: ContentRecord) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise DependencyError("Classifier command template is empty.", transient=False)
    try:
        rendered = stripped.format(
            content_id=shlex.quote(record.content_id),
            provider=shlex.quote(record.provider),
        )
    except (KeyError, IndexError) as error:
        raise DependencyError(
            f"Unsupported classifier template placeholder: {error}",
            transient=False,
        ) from error
    argv = shlex.split(rendered)
    if not argv:
        raise DependencyError("Classifier command template rendered empty command.", transient=False)
    return argv


def _record_payload(record: ContentRecord) -> dict[str, Any]:
    return {
        "content_id": record.content_id,
        "source_type": record.source_type,
        "provider": record.provider,
        "source_name": record.source_name,
        "title": record.title,
        "summary": record.summary,
        "content": record.content,
        "language": record.language,
        "canonical_url": record.canonical_url,
    }


def _parse_result(stdout: str) -> ClassificationResult:
    try:
        payload = json.loads(stdout)
    except json.JSONDecodeError as error:
        raise DependencyError(f"Classifier returned invalid JSON: {error}", transient=False) from error
    if not isinstance(payload, dict):
        raise DependencyError("Classifier output must be a JSON object.", transient=False)
    sentimiento = payload.get("sentimiento")
    if not isinstance(sentimiento, str) or not sentimiento.strip():
        raise DependencyError("Classifier output has no sentimiento.", transient=False)
    categoria = payload.get("categoria")
    return ClassificationResult(
        sentimiento=sentimiento.strip(),
        categoria=str(categoria).strip() if categoria else None,
    )
