from __future__ import annotations

import threading
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from reconcile.config import ReconcileConfig, load_config
from reconcile.equivalence import ColorMatcher
from reconcile.errors import StoreError
from reconcile.records import CatalogVariant
from reconcile.report import build_audit_report, tier_counts
from reconcile.resolver import MatchResult, Resolver
from reconcile.store import IndexStore, SqlIndexStore, load_index
from reconcile.synonyms import SynonymTable


@lru_cache(maxsize=1)
def get_config() -> ReconcileConfig:
    return load_config()


@lru_cache(maxsize=1)
def get_matcher() -> ColorMatcher:
    return ColorMatcher(SynonymTable.load(get_config().synonyms_path))


@lru_cache(maxsize=1)
def get_store() -> IndexStore:
    return SqlIndexStore()


class ResolverCache:
    """Keeps one resolver per active ``(generation, revision)``.

    A swap changes the generation and an incremental upsert changes the
    revision; either one reloads the index on the next request.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._store: Optional[IndexStore] = None
        self._version: Optional[Tuple[int, int]] = None
        self._resolver: Optional[Resolver] = None

    def get(self, store: IndexStore, matcher: ColorMatcher, config: ReconcileConfig) -> Resolver:
        version = store.active_revision()
        with self._lock:
            if self._resolver is None or self._store is not store or self._version != version:
                gen = version[0] if version else None
                index = load_index(store, gen, page_size=config.page_size)
                self._resolver = Resolver(index, matcher, config)
                self._store = store
                self._version = version
            return self._resolver


_resolvers = ResolverCache()


def get_resolver_cache() -> ResolverCache:
    return _resolvers


def get_resolver(
    store: IndexStore = Depends(get_store),
    cache: ResolverCache = Depends(get_resolver_cache),
    matcher: ColorMatcher = Depends(get_matcher),
    config: ReconcileConfig = Depends(get_config),
) -> Resolver:
    try:
        return cache.get(store, matcher, config)
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"image index unavailable: {e}")


class MatchOut(BaseModel):
    model_ref: str
    color: str
    tier: str
    ambiguous: bool
    images: List[str]
    storage_locators: List[str]
    candidates: List[str] = []
    reasons: List[str] = []
    prefix_length: int = 0
    dropped: int = 0
    note: str = ""
    primary_image: Optional[str] = None


class VariantIn(BaseModel):
    model_ref: str
    color: str = ""
    extra: Dict[str, Any] = {}


class AuditRequest(BaseModel):
    variants: List[VariantIn]
    include_all: bool = False


class AuditOut(BaseModel):
    total_variants: int
    tiers: Dict[str, int]
    flagged: int
    results: List[MatchOut]


class UnparsedOut(BaseModel):
    filename: str
    reason: str
    storage_locator: Optional[str] = None


class PaginatedUnparsed(BaseModel):
    generation: Optional[int] = None
    limit: int
    offset: int
    items: List[UnparsedOut]


app = FastAPI(title="Image Reconciliation API", version="0.1.0")

# CORS for local dev (adjust later as needed)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _to_out(r: MatchResult) -> MatchOut:
    primary = r.primary_image
    return MatchOut(**r.to_dict(), primary_image=primary.storage_locator if primary else None)


@app.get("/health")
def health(store: IndexStore = Depends(get_store)) -> dict:
    try:
        gen = store.active_generation()
    except StoreError as e:
        return {"status": "degraded", "detail": str(e)}
    return {"status": "ok", "active_generation": gen}


@app.get("/resolve", response_model=MatchOut)
def resolve(
    model_ref: str = Query(..., min_length=1, description="Catalog model reference"),
    color: str = Query("", description="Catalog color as authored"),
    resolver: Resolver = Depends(get_resolver),
):
    return _to_out(resolver.resolve(model_ref, color))


@app.get("/index/stats")
def index_stats(
    store: IndexStore = Depends(get_store),
    resolver: Resolver = Depends(get_resolver),
) -> dict:
    stats = resolver.index.stats()
    stats["active_generation"] = store.active_generation()
    return stats


@app.get("/index/unparsed", response_model=PaginatedUnparsed)
def list_unparsed(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    store: IndexStore = Depends(get_store),
):
    try:
        gen = store.active_generation()
        items = store.list_unparsed(gen, limit=limit, offset=offset) if gen is not None else []
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"image index unavailable: {e}")
    return PaginatedUnparsed(
        generation=gen,
        limit=limit,
        offset=offset,
        items=[UnparsedOut(filename=f.filename, reason=f.reason, storage_locator=f.storage_locator) for f in items],
    )


@app.post("/audit", response_model=AuditOut)
def audit(req: AuditRequest, resolver: Resolver = Depends(get_resolver)):
    variants = [CatalogVariant(model_ref=v.model_ref, color=v.color, extra=dict(v.extra)) for v in req.variants]
    results = list(resolver.resolve_all(variants))
    flagged = build_audit_report(results)
    rows = results if req.include_all else flagged
    return AuditOut(
        total_variants=len(results),
        tiers=tier_counts(results),
        flagged=len(flagged),
        results=[_to_out(r) for r in rows],
    )
