"""Audit report for a reconciliation run.

Only results a human should look at before trusting automated re-tagging are
listed: every tier other than EXACT, and every ambiguous match.
"""
from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from reconcile.resolver import MatchResult, Tier


def build_audit_report(results: Iterable[MatchResult]) -> List[MatchResult]:
    return [r for r in results if r.tier != Tier.EXACT or r.ambiguous]


def tier_counts(results: Iterable[MatchResult]) -> Dict[str, int]:
    counts = Counter(r.tier.value for r in results)
    return {t.value: counts.get(t.value, 0) for t in Tier}


def audit_payload(results: List[MatchResult], include_all: bool = False,
                  meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    flagged = build_audit_report(results)
    rows = results if include_all else flagged
    return {
        "generated_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        "total_variants": len(results),
        "tiers": tier_counts(results),
        "ambiguous": sum(1 for r in results if r.ambiguous),
        "flagged": len(flagged),
        **(meta or {}),
        "results": [_row(r) for r in rows],
    }


def _row(result: MatchResult) -> Dict[str, Any]:
    row = result.to_dict()
    if result.variant.extra:
        row["extra"] = dict(result.variant.extra)
    return row


def write_audit_report(path: str | Path, results: Iterable[MatchResult], include_all: bool = False,
                       meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Write the audit payload as JSON and return it."""
    payload = audit_payload(list(results), include_all=include_all, meta=meta)
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, ensure_ascii=False, default=str)
    return payload
