#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging

from casesearch.container import build_services


def main() -> int:
    parser = argparse.ArgumentParser(description="Run resident indexing worker loop.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=0,
        help="Concurrent worker loops (0 means CSI_WORKER_CONCURRENCY).",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    services = build_services()
    workers = args.workers or services.settings.worker_concurrency
    stop_after = args.iterations if args.iterations > 0 else None
    if workers > 1:
        stats = services.worker.run_pool(workers=workers, stop_after_iterations=stop_after)
    else:
        stats = services.worker.run_forever(stop_after_iterations=stop_after)
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
