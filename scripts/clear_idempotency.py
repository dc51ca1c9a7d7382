#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from minutes_pipeline.idempotency import create_idempotency_store_from_env


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Forget every recorded event fingerprint and notification claim so events can be replayed."
    )
    parser.add_argument("--yes", action="store_true", help="confirm clearing the configured store")
    args = parser.parse_args()

    store = create_idempotency_store_from_env()
    backend = str(getattr(store, "backend_name", "unknown"))
    if not args.yes:
        print(json.dumps({"success": False, "backend": backend, "message": "pass --yes to clear"}, ensure_ascii=True))
        return 2
    store.clear()
    print(json.dumps({"success": True, "backend": backend, "cleared": True}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
