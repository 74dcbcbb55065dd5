#!/usr/bin/env python3
"""Resolve catalog variants against the image index and write an audit report.

Read-only. The index comes from the active generation in the database, or
from a snapshot written by build_image_index.py --snapshot.

The report lists every result a human should review (tier other than EXACT,
or ambiguous); --all includes confident matches too.

Examples:
  python scripts/30_normalize_match/reconcile_variants.py --variants catalog.csv
  python scripts/30_normalize_match/reconcile_variants.py --variants variants.json --index reports/index.json --all
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.session import DEFAULT_DB_URL  # noqa: E402
from reconcile.config import load_config  # noqa: E402
from reconcile.equivalence import ColorMatcher  # noqa: E402
from reconcile.errors import ConfigError, StoreError  # noqa: E402
from reconcile.image_index import ImageIndex  # noqa: E402
from reconcile.listing import load_variants  # noqa: E402
from reconcile.report import tier_counts, write_audit_report  # noqa: E402
from reconcile.resolver import Resolver  # noqa: E402
from reconcile.store import SqlIndexStore, load_index  # noqa: E402
from reconcile.synonyms import SynonymTable  # noqa: E402


def _timestamped_out(path: str) -> str:
    p = Path(path)
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    return str(p.with_name(f"{p.stem}_{ts}{p.suffix or '.json'}"))


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Resolve catalog variants to images and write an audit report.")
    ap.add_argument("--variants", required=True, help="Catalog variants (JSON list or CSV with modelRef,color)")
    ap.add_argument("--db-url", dest="db_url", default=os.environ.get("IMGRECON_DB_URL", DEFAULT_DB_URL))
    ap.add_argument("--index", help="Use an index snapshot JSON instead of the database")
    ap.add_argument("--config", help="Settings YAML (default: vocab/reconcile.yaml or IMGRECON_CONFIG)")
    ap.add_argument("--out", default=os.path.join("reports", "reconcile_audit.json"),
                    help="Report path; a timestamp is appended unless --no-timestamp")
    ap.add_argument("--no-timestamp", action="store_true")
    ap.add_argument("--all", action="store_true", help="Include confident EXACT matches in the report")
    ap.add_argument("--verbose", "-v", action="store_true")
    return ap.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")
    try:
        config = load_config(args.config)
        matcher = ColorMatcher(SynonymTable.load(config.synonyms_path))
        variants = load_variants(args.variants)
        if args.index:
            index = ImageIndex.from_dict(json.loads(Path(args.index).read_text(encoding="utf-8")))
            source = str(args.index)
        else:
            store = SqlIndexStore.for_url(args.db_url)
            gen = store.active_generation()
            if gen is None:
                print("[warn] no active index generation; every variant will resolve to NONE")
            index = load_index(store, gen, page_size=config.page_size)
            source = f"generation {gen}"
    except (ConfigError, OSError, ValueError) as e:
        print(f"[error] {e}")
        return 2
    except StoreError as e:
        print(f"[error] store failure: {e}")
        return 1

    resolver = Resolver(index, matcher, config)
    results = list(resolver.resolve_all(variants))

    print(f"Index: {source} ({len(index)} records, {len(index.model_refs())} model refs)")
    print(f"Variants: {len(results)}")
    for tier, n in tier_counts(results).items():
        print(f"  {tier:<13} {n}")
    ambiguous = [r for r in results if r.ambiguous]
    print(f"  ambiguous     {len(ambiguous)}")
    for r in ambiguous[:10]:
        print(f"    {r.variant.model_ref}/{r.variant.color}: {r.tier.value} candidates={list(r.candidates)}")

    out_path = args.out if args.no_timestamp else _timestamped_out(args.out)
    payload = write_audit_report(out_path, results, include_all=args.all,
                                 meta={"index_source": source, "variants_file": str(args.variants)})
    print(f"Wrote audit report ({payload['flagged']} flagged) -> {out_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
