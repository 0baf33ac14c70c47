"""Local deterministic classifier for CommandClassifier integration tests."""

from __future__ import annotations

import argparse
import json
import sys

NEGATIVE_WORDS = ("crisis", "demanda", "falla", "fraude", "queja", "scandal", "outage")
POSITIVE_WORDS = ("premio", "lanza", "crece", "record", "award", "growth")


def main(argv: list[str] | None = None) -> int:
    """Read one record from stdin and print a keyword-based sentiment."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--fail", action="store_true", help="exit non-zero without output")
    parser.add_argument("--categoria", default="general")
    args, _ = parser.parse_known_args(argv)

    if args.fail:
        sys.stderr.write("echo classifier asked to fail\n")
        return 3

    record = json.loads(sys.stdin.read() or "{}")
    text = " ".join(
        str(record.get(key) or "") for key in ("title", "summary", "content")
    ).lower()
    if any(word in text for word in NEGATIVE_WORDS):
        sentimiento = "negativo"
    elif any(word in text for word in POSITIVE_WORDS):
        sentimiento = "positivo"
    else:
        sentimiento = "neutro"
    sys.stdout.write(json.dumps({"sentimiento": sentimiento, "categoria": args.categoria}))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
