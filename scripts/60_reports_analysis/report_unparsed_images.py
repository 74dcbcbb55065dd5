#!/usr/bin/env python3
"""List images that no filename rule could parse, grouped by failure reason.

Reads the active index generation. Use --out to write the full list as JSON
for manual review or renaming.
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from collections import Counter
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.session import DEFAULT_DB_URL  # noqa: E402
from reconcile.errors import StoreError  # noqa: E402
from reconcile.store import SqlIndexStore  # noqa: E402


def main(argv: Optional[list[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Report unparsed image filenames in the active index.")
    ap.add_argument("--db-url", dest="db_url", default=os.environ.get("IMGRECON_DB_URL", DEFAULT_DB_URL))
    ap.add_argument("--limit", type=int, default=20, help="Sample rows to print")
    ap.add_argument("--out", help="Write all unparsed entries as JSON")
    args = ap.parse_args(argv)

    try:
        store = SqlIndexStore.for_url(args.db_url)
        gen = store.active_generation()
        failures = list(store.scan_unparsed(gen)) if gen is not None else []
    except StoreError as e:
        print(f"[error] store failure: {e}")
        return 1

    if gen is None:
        print("No active index generation.")
        return 0
    reasons = Counter(f.reason for f in failures)
    print(f"Generation {gen}: {len(failures)} unparsed image(s)")
    for reason, n in reasons.most_common():
        print(f"  {n:>6}  {reason}")
    for f in failures[: args.limit]:
        print(f"  - {f.filename}  [{f.reason}]  {f.storage_locator or ''}")

    if args.out:
        out = Path(args.out)
        out.parent.mkdir(parents=True, exist_ok=True)
        with out.open("w", encoding="utf-8") as fh:
            json.dump({
                "generation": gen,
                "total": len(failures),
                "by_reason": dict(reasons),
                "items": [{"filename": f.filename, "reason": f.reason, "storage_locator": f.storage_locator}
                          for f in failures],
            }, fh, indent=2, ensure_ascii=False)
        print(f"Wrote unparsed report -> {out}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
