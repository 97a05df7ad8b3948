#!/usr/bin/env python3
"""
Rebuild a tenant's search indices from the relational store.

Usage:
    python scripts/reindex_tenant.py --tenant-id <tenant_id> [--entity-type cases] [--mode sync] [--prune]
"""
from __future__ import annotations

import argparse
import json
import logging

from casesearch.container import build_services
from casesearch.index_schema import ENTITY_TYPES
from casesearch.reindex import REINDEX_MODES


def main() -> int:
    parser = argparse.ArgumentParser(description="Backfill or rebuild a tenant's search indices.")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--entity-type", choices=[*ENTITY_TYPES, "all"], default="all")
    parser.add_argument("--mode", choices=REINDEX_MODES, default="queue")
    parser.add_argument("--batch-size", type=int, default=0)
    parser.add_argument("--prune", action="store_true", help="Delete indexed ids missing from the store.")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    services = build_services()
    entity_types = ENTITY_TYPES if args.entity_type == "all" else (args.entity_type,)
    results = [
        services.reindex.reindex_tenant(
            args.tenant_id,
            entity_type,
            mode=args.mode,
            batch_size=args.batch_size or None,
            prune=args.prune,
        )
        for entity_type in entity_types
    ]
    print(json.dumps({"success": True, "results": results}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
