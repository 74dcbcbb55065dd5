#!/usr/bin/env python3
"""Build or refresh the image index from a raw image listing.

Dry-run by default: the listing is parsed and indexed in memory and a summary
is printed; nothing is written. With --apply the records are written to the
database page by page:

  (default)   incremental upsert into the active generation
  --rebuild   full rebuild into a staging generation, swapped in at the end
  --resume    continue an interrupted --rebuild (implies --rebuild)

Examples:
  python scripts/30_normalize_match/build_image_index.py --root D:\\images\\campaign
  python scripts/30_normalize_match/build_image_index.py --listing listing.json --apply --rebuild
  python scripts/30_normalize_match/build_image_index.py --root ./images --snapshot reports/index.json

Exit codes: 0 ok, 1 some pages failed, 2 corpus inconsistency or bad input.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.session import DEFAULT_DB_URL  # noqa: E402
from reconcile.builder import BuildReport, IndexBuilder  # noqa: E402
from reconcile.config import load_config  # noqa: E402
from reconcile.errors import ConfigError, CorpusInconsistencyError, IndexBuildError, StoreError  # noqa: E402
from reconcile.filename_parser import FilenameParser  # noqa: E402
from reconcile.image_index import ImageIndex  # noqa: E402
from reconcile.listing import DirectoryListing, JsonListing, Listing  # noqa: E402
from reconcile.store import MemoryIndexStore, SqlIndexStore, load_index  # noqa: E402


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Build or refresh the image index from an image listing.")
    src = ap.add_mutually_exclusive_group(required=True)
    src.add_argument("--root", help="Directory of image files (walked recursively)")
    src.add_argument("--listing", help="JSON listing: [{filename, storage_locator}, ...]")
    ap.add_argument("--db-url", dest="db_url", default=os.environ.get("IMGRECON_DB_URL", DEFAULT_DB_URL))
    ap.add_argument("--config", help="Settings YAML (default: vocab/reconcile.yaml or IMGRECON_CONFIG)")
    ap.add_argument("--apply", action="store_true", help="Write to the database (default: dry-run)")
    ap.add_argument("--rebuild", action="store_true", help="Full rebuild with an atomic swap")
    ap.add_argument("--resume", action="store_true", help="Resume a pending rebuild")
    ap.add_argument("--workers", type=int, default=None, help="Parse with N worker processes")
    ap.add_argument("--page-size", dest="page_size", type=int, default=None)
    ap.add_argument("--snapshot", help="Write a deterministic JSON snapshot of the resulting index")
    ap.add_argument("--out", help="Write the build report as JSON")
    ap.add_argument("--verbose", "-v", action="store_true")
    return ap.parse_args(argv)


def _print_summary(report: BuildReport, index: Optional[ImageIndex]) -> None:
    mode = report.mode if report.mode == "dry-run" else f"{report.mode} (generation {report.generation})"
    print(f"Mode: {mode}")
    print(f"Listed: {report.total}  pages: {report.pages}  written: {report.written}  "
          f"unparsed: {report.unparsed}  skipped: {report.skipped}  deleted: {report.deleted}")
    if report.failed_pages:
        print(f"Failed pages: {report.failed_pages} ({len(report.failed_keys)} filenames)")
        for name in report.failed_keys[:10]:
            print(f"  - {name}")
    if index is not None:
        stats = index.stats()
        print("Index: " + ", ".join(f"{k}={v}" for k, v in stats.items()))
        for failure in index.unparsed[:10]:
            print(f"  unparsed: {failure.filename} ({failure.reason})")


def _write_json(path: str, payload: Dict[str, Any]) -> None:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)
    print(f"Wrote build report -> {out}")


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")
    try:
        config = load_config(args.config).with_overrides(workers=args.workers, page_size=args.page_size)
        listing: Listing = DirectoryListing(args.root) if args.root else JsonListing(args.listing)
    except ConfigError as e:
        print(f"[error] {e}")
        return 2

    parser = FilenameParser.from_config(config)
    index: Optional[ImageIndex] = None
    rc = 0
    try:
        if not args.apply:
            builder = IndexBuilder(MemoryIndexStore(), parser, config)
            index, report = builder.dry_run(listing)
            if args.rebuild or args.resume:
                print("[dry-run] --rebuild/--resume only take effect with --apply")
        else:
            store = SqlIndexStore.for_url(args.db_url)
            builder = IndexBuilder(store, parser, config)
            try:
                if args.rebuild or args.resume:
                    report = builder.rebuild(listing, resume=args.resume)
                else:
                    report = builder.upsert(listing)
            except IndexBuildError as e:
                print(f"[error] {e}")
                report = e.report if isinstance(e.report, BuildReport) else BuildReport("rebuild")
                rc = 1
            if rc == 0:
                index = load_index(store, page_size=config.page_size)
                if not report.ok:
                    rc = 1
    except CorpusInconsistencyError as e:
        print(f"[error] corpus inconsistency: {e}")
        return 2
    except StoreError as e:
        print(f"[error] store failure: {e}")
        return 1

    _print_summary(report, index)
    if args.snapshot and index is not None:
        snap = Path(args.snapshot)
        snap.parent.mkdir(parents=True, exist_ok=True)
        snap.write_text(index.dumps(), encoding="utf-8")
        print(f"Wrote index snapshot -> {snap}")
    if args.out:
        _write_json(args.out, {
            "apply": args.apply,
            "report": report.to_dict(),
            "stats": index.stats() if index is not None else None,
        })
    return rc


if __name__ == "__main__":
    raise SystemExit(main())
