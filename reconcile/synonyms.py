"""Color synonym table.

One immutable artifact replaces the per-script color maps. Each YAML entry is
an undirected edge set: ``BLACK: [BLA, BLK]`` links BLACK<->BLA and
BLACK<->BLK, but not BLA<->BLK. Links are deliberately not transitive; a chain
such as DBR->BRO->LBR would otherwise make dark and light brown equivalent.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from ruamel.yaml import YAML

from reconcile.colors import clean_color
from reconcile.errors import ConfigError

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SynonymTable:
    version: Optional[str] = None
    # token -> every token directly linked to it (both directions)
    links: Mapping[str, FrozenSet[str]] = field(default_factory=dict)
    # numeric vendor code -> color name
    codes: Mapping[str, str] = field(default_factory=dict)
    # tokens authored as entry keys
    names: FrozenSet[str] = frozenset()

    @classmethod
    def from_mapping(
        cls,
        synonyms: Mapping[str, Iterable[str]],
        codes: Optional[Mapping[str, str]] = None,
        version: Optional[str] = None,
    ) -> "SynonymTable":
        edges: Dict[str, set] = {}
        names: set = set()

        def _link(a: str, b: str) -> None:
            if not a or not b or a == b:
                return
            edges.setdefault(a, set()).add(b)
            edges.setdefault(b, set()).add(a)

        for key, values in (synonyms or {}).items():
            k = clean_color(str(key))
            if not k:
                raise ConfigError(f"synonym key {key!r} is empty after normalization")
            names.add(k)
            if isinstance(values, str):
                values = [values]
            for v in values or []:
                _link(k, clean_color(str(v)))
        code_map: Dict[str, str] = {}
        for code, name in (codes or {}).items():
            c = clean_color(str(code))
            n = clean_color(str(name))
            if not c or not n:
                raise ConfigError(f"color code entry {code!r}: {name!r} is empty after normalization")
            if not c.isdigit():
                raise ConfigError(f"color code {code!r} is not numeric")
            code_map[c] = n
            _link(c, n)
        return cls(
            version=str(version) if version is not None else None,
            links={k: frozenset(v) for k, v in edges.items()},
            codes=code_map,
            names=frozenset(names),
        )

    @classmethod
    def load(cls, path: str | Path) -> "SynonymTable":
        p = Path(path)
        yaml = YAML(typ="safe")
        try:
            with p.open("r", encoding="utf-8") as f:
                data: Any = yaml.load(f) or {}
        except FileNotFoundError as e:
            raise ConfigError(f"synonym table not found: {p}") from e
        except Exception as e:
            raise ConfigError(f"failed to read synonym table {p}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{p}: expected a mapping at top level")
        table = cls.from_mapping(data.get("synonyms") or {}, data.get("codes") or {}, data.get("version"))
        _log.debug("loaded synonym table %s (version=%s, %d tokens, %d codes)",
                   p, table.version, len(table.links), len(table.codes))
        return table

    def related(self, token: str) -> Tuple[str, ...]:
        """Tokens directly linked to ``token``, sorted for reproducible iteration."""
        return tuple(sorted(self.links.get(clean_color(token), ())))

    def are_linked(self, a: str, b: str) -> bool:
        ca, cb = clean_color(a), clean_color(b)
        return bool(ca and cb) and cb in self.links.get(ca, ())

    def canonical(self, token: str) -> str:
        """Entry key this token belongs to; longest key wins, the token itself when unlinked."""
        t = clean_color(token)
        if t in self.codes:
            return self.codes[t]
        keys = [n for n in self.links.get(t, ()) if n in self.names]
        if t in self.names:
            keys.append(t)
        if not keys:
            return t
        return sorted(keys, key=lambda n: (-len(n), n != t, n))[0]

    def __len__(self) -> int:
        return len(self.links)

    def __contains__(self, token: object) -> bool:
        return isinstance(token, str) and clean_color(token) in self.links

