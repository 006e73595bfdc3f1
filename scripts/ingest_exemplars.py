"""
Exemplar Ingestion Script.

Embeds solved transcripts and loads them into the OpenSearch exemplar
index, creating the index with its k-NN mapping if needed.

Accepts a JSON array or JSON Lines file. Each record is either
``{"id", "transcript", "result"}`` or MUC-4 style
``{"docid", "doctext", "templates"}`` (the first template is used).

Usage:
    python scripts/ingest_exemplars.py data/train.jsonl [--domain muc4-v1] [--limit 500]
"""

import argparse
import asyncio
import json
import os
import sys

# Add project root to path so we can import formfill
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dotenv import load_dotenv
load_dotenv(".env.local")

from formfill.config import get_settings
from formfill.logging_config import setup_logging, get_logger
from formfill.services.exemplar_retriever import create_store

setup_logging()
logger = get_logger(__name__)


def load_records(path: str) -> list[dict]:
    with open(path, encoding="utf-8") as fh:
        text = fh.read().strip()
    if not text:
        return []
    if text.startswith("["):
        return json.loads(text)
    return [json.loads(line) for line in text.splitlines() if line.strip()]


async def ingest(path: str, domain_id: str | None = None, limit: int | None = None) -> int:
    settings = get_settings()
    if domain_id:
        settings = settings.model_copy(update={"domain_id": domain_id})

    records = load_records(path)
    if limit:
        records = records[:limit]

    logger.info("ingestion_started", path=path, records=len(records), domain_id=settings.domain_id)
    store = create_store(settings)
    count = await store.ingest(records)
    logger.info("ingestion_complete", indexed=count, skipped=len(records) - count)
    return count


def main() -> None:
    parser = argparse.ArgumentParser(description="Ingest solved exemplars into the vector index")
    parser.add_argument("path", help="JSON or JSONL file with solved records")
    parser.add_argument("--domain", help="Domain/template id (defaults to DOMAIN_ID)")
    parser.add_argument("--limit", type=int, help="Only ingest the first N records")

    args = parser.parse_args()
    count = asyncio.run(ingest(args.path, domain_id=args.domain, limit=args.limit))
    print(f"Indexed {count} exemplars.")


if __name__ == "__main__":
    main()
