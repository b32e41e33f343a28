"""
Build the knowledge graph from a JSON catalog feed.

    python -m scripts.build_knowledge_graph catalog.json
    python -m scripts.build_knowledge_graph catalog.json --update-relationships

The feed is a JSON list of catalog items, or an object with an "items" list.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from config import configure_logging, settings
from knowledge_graph.models import EntityType
from knowledge_graph.service import build_knowledge_base

logger = logging.getLogger(__name__)


def load_feed(path: Path) -> List[Dict[str, Any]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("items") or []
    if not isinstance(data, list):
        raise SystemExit(f"Unsupported feed format in {path}")
    return data


async def build_from_feed(path: Path, limit: Optional[int] = None, update_relationships: bool = False) -> Dict[str, Any]:
    items = load_feed(path)
    if limit:
        items = items[:limit]

    kb = build_knowledge_base(settings)
    try:
        report = await kb.builder.build(items)
        print(f"Built graph from {len(items)} items: {report.to_dict()}")

        if update_relationships:
            products = await kb.repository.find_by_type(EntityType.PRODUCT)
            print(f"Re-deriving relationships for {len(products)} products...")
            added = 0
            for entity in products:
                try:
                    added += (await kb.builder.update_relationships(entity.id)).relationships
                except Exception as e:
                    logger.error(f"Failed updating relationships for {entity.id}: {e}")
            print(f"Done. Added {added} relationships.")
        return report.to_dict()
    finally:
        await kb.aclose()


def main():
    import argparse
    parser = argparse.ArgumentParser(description="Build the shopping knowledge graph from a catalog feed")
    parser.add_argument("feed", type=Path, help="JSON file with catalog items")
    parser.add_argument("--limit", type=int, default=None, help="Max items to process")
    parser.add_argument("--update-relationships", action="store_true",
                        help="Also derive feature and tag-overlap edges for every product")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args()

    configure_logging(args.log_level)
    asyncio.run(build_from_feed(args.feed, limit=args.limit, update_relationships=args.update_relationships))


if __name__ == "__main__":
    main()
