#!/usr/bin/env python3
"""Explain why two color strings are (or are not) equivalent.

  python scripts/90_util/explain_color_match.py BLO BLACK
  python scripts/90_util/explain_color_match.py DBR01 DBR02
  python scripts/90_util/explain_color_match.py --filename PD760221_BLO_DITA_B.jpg

Prints both normalized forms, the synonym links of each side and the
matcher's decision with its reason. --json emits the same as one object.
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from reconcile.colors import normalize_color  # noqa: E402
from reconcile.config import load_config  # noqa: E402
from reconcile.equivalence import ColorMatcher  # noqa: E402
from reconcile.errors import ConfigError, ParseFailure  # noqa: E402
from reconcile.filename_parser import FilenameParser  # noqa: E402
from reconcile.synonyms import SynonymTable  # noqa: E402


def explain(matcher: ColorMatcher, a: str, b: str) -> Dict[str, Any]:
    m = matcher.match(a, b)
    out: Dict[str, Any] = {"a": a, "b": b, "matched": m.matched, "reason": m.reason, "detail": m.detail}
    for side, raw in (("a", a), ("b", b)):
        n = normalize_color(raw)
        out[f"{side}_normalized"] = {"base": n.base, "numeric_suffix": n.numeric_suffix}
        out[f"{side}_canonical"] = matcher.synonyms.canonical(n.base or n.key)
        out[f"{side}_related"] = list(matcher.synonyms.related(n.base or n.key))
    return out


def main(argv: Optional[list[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Explain a color equivalence decision or a filename parse.")
    ap.add_argument("colors", nargs="*", help="Two color strings to compare")
    ap.add_argument("--filename", action="append", default=[], help="Also show how a filename parses")
    ap.add_argument("--config", help="Settings YAML")
    ap.add_argument("--json", action="store_true", help="Emit JSON")
    args = ap.parse_args(argv)

    if len(args.colors) not in (0, 2):
        ap.error("pass exactly two color strings")
    if not args.colors and not args.filename:
        ap.error("nothing to explain")

    try:
        config = load_config(args.config)
        matcher = ColorMatcher(SynonymTable.load(config.synonyms_path))
    except ConfigError as e:
        print(f"[error] {e}")
        return 2

    payload: Dict[str, Any] = {}
    if args.colors:
        payload["match"] = explain(matcher, args.colors[0], args.colors[1])
    if args.filename:
        parser = FilenameParser.from_config(config)
        parses = []
        for name in args.filename:
            p = parser.parse(name)
            if isinstance(p, ParseFailure):
                parses.append({"filename": name, "parsed": False, "reason": p.reason})
            else:
                parses.append({"filename": name, "parsed": True, "rule": p.rule, "model_ref": p.model_ref,
                               "color": p.color_token, "view_tag": p.view_tag, "confidence": p.confidence})
        payload["filenames"] = parses

    if args.json:
        print(json.dumps(payload, indent=2, ensure_ascii=False))
        return 0

    m = payload.get("match")
    if m:
        verdict = "EQUIVALENT" if m["matched"] else "NOT equivalent"
        print(f"{m['a']!r} vs {m['b']!r}: {verdict} (reason={m['reason']}{', ' + m['detail'] if m['detail'] else ''})")
        for side in ("a", "b"):
            n = m[f"{side}_normalized"]
            print(f"  {side}: base={n['base']!r} numeric={n['numeric_suffix']!r} "
                  f"canonical={m[side + '_canonical']!r} related={m[side + '_related']}")
    for p in payload.get("filenames", []):
        if p["parsed"]:
            print(f"{p['filename']}: model_ref={p['model_ref']} color={p['color']} view={p['view_tag']!r} "
                  f"confidence={p['confidence']} rule={p['rule']}")
        else:
            print(f"{p['filename']}: UNPARSED ({p['reason']})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
