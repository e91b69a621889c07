"""CLI for ingesting a local directory of documents into noodexx."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from noodexx.app import create_app
from noodexx.ingestion import IngestionError, is_allowed_extension
from noodexx.provider_manager import ProviderNotConfiguredError

logger = logging.getLogger("noodexx.scripts.ingest_local")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ingest a local directory into the noodexx knowledge base")
    parser.add_argument("path", help="Directory (or single file) to ingest")
    parser.add_argument("--config", dest="config_path", help="Path to config.json (default: ./config.json)")
    parser.add_argument("--tags", default="", help="Comma separated tags applied to every document")
    return parser


def iter_candidate_files(target: Path, allowed: list[str]) -> list[Path]:
    if target.is_file():
        return [target]
    allowed_lower = {ext.lower() for ext in allowed}
    return sorted(
        child for child in target.rglob("*") if child.is_file() and child.suffix.lower() in allowed_lower
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    target = Path(args.path).expanduser().resolve()
    if not target.exists():
        parser.error(f"Path '{args.path}' does not exist")
        return 1

    app = create_app(config_path=args.config_path)
    state = app.state.services
    guardrails = state.ingestor.guardrails
    tags = [tag.strip() for tag in args.tags.split(",") if tag.strip()]

    files = iter_candidate_files(target, guardrails.allowed_extensions)
    documents = 0
    chunks = 0
    failures = 0
    for path in files:
        if not is_allowed_extension(path.name, guardrails):
            logger.info("ingest_local.skip path=%s reason=extension", path)
            continue
        try:
            result = state.ingestor.ingest_file(str(path), path.read_bytes(), tags)
        except ProviderNotConfiguredError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1
        except (IngestionError, OSError) as exc:
            failures += 1
            logger.warning("ingest_local.failed path=%s error=%s", path, exc)
            print(f"skipped {path}: {exc}", file=sys.stderr)
            continue
        documents += 1
        chunks += result.chunks_ingested

    print(
        f"Ingested {chunks} chunk{'s' if chunks != 1 else ''} from "
        f"{documents} document{'s' if documents != 1 else ''}"
        + (f" ({failures} failed)" if failures else "")
    )
    return 0 if not failures else 2


if __name__ == "__main__":  # pragma: no cover - CLI entry
    sys.exit(main())
