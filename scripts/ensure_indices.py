#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys

from casesearch.container import build_services
from casesearch.errors import SchemaVersionMismatch
from casesearch.index_schema import ENTITY_TYPES


def main() -> int:
    parser = argparse.ArgumentParser(description="Create per-tenant search indices if absent.")
    parser.add_argument("tenant_ids", nargs="+")
    args = parser.parse_args()

    services = build_services()
    created: list[dict[str, str]] = []
    for tenant_id in args.tenant_ids:
        for entity_type in ENTITY_TYPES:
            try:
                alias = services.indexing.ensure_index(tenant_id, entity_type)
            except SchemaVersionMismatch as exc:
                print(json.dumps({"success": False, "error": str(exc)}, ensure_ascii=True))
                return 2
            created.append({"tenant_id": tenant_id, "entity_type": entity_type, "alias": alias})
    json.dump({"success": True, "indices": created}, sys.stdout, ensure_ascii=True)
    print()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
