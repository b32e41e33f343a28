"""
Re-mirror entities into the relationship and similarity stores.

Manual repair for entities whose best-effort sync failed:

    python -m scripts.resync_entities --type product
    python -m scripts.resync_entities --id product_42 --id product_43
"""

import asyncio
import logging
from typing import List, Optional

from config import configure_logging, settings
from knowledge_graph.models import EntityType
from knowledge_graph.service import build_knowledge_base

logger = logging.getLogger(__name__)


async def resync(entity_ids: Optional[List[str]] = None, entity_type: Optional[str] = None,
                 missing_vectors_only: bool = False) -> int:
    kb = build_knowledge_base(settings)
    try:
        if entity_ids:
            ids = list(entity_ids)
        else:
            types = [EntityType(entity_type)] if entity_type else list(EntityType)
            ids = []
            for t in types:
                for entity in await kb.repository.find_by_type(t):
                    if missing_vectors_only and entity.has_vector:
                        continue
                    ids.append(entity.id)

        print(f"Resyncing {len(ids)} entities...")
        failed = 0
        for entity_id in ids:
            try:
                status = (await kb.repository.sync_entity(entity_id)).sync_status
                if not (status.graph_synced and status.vector_synced):
                    failed += 1
                    print(f"Partial sync for {entity_id}: {status.to_dict()}")
            except Exception as e:
                failed += 1
                logger.error(f"Failed resyncing {entity_id}: {e}")
        print(f"Done. {len(ids) - failed} fully synced, {failed} incomplete.")
        return failed
    finally:
        await kb.aclose()


def main():
    import argparse
    parser = argparse.ArgumentParser(description="Re-mirror knowledge entities into the graph and vector stores")
    parser.add_argument("--id", dest="ids", action="append", default=None, help="Entity id (repeatable)")
    parser.add_argument("--type", choices=[t.value for t in EntityType], default=None, help="Only this entity type")
    parser.add_argument("--missing-vectors", action="store_true", help="Only entities without a vector")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args()

    configure_logging(args.log_level)
    failed = asyncio.run(resync(args.ids, args.type, args.missing_vectors))
    raise SystemExit(1 if failed else 0)


if __name__ == "__main__":
    main()
