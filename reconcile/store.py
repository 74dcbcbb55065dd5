"""Persisted image index store.

The store keeps *generations* of the index. Readers only look at the active
generation. A full rebuild writes into a staging generation page by page and
``activate`` swaps it in with one transaction, so a reader sees either the
old corpus or the new one, never a mix. Incremental runs upsert straight into
the active generation; every page is its own transaction and every key is
complete once its page commits.

Writes are insert-or-replace keyed by ``filename`` within a generation, which
makes a retried or resumed page a no-op.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, ContextManager, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, TypeVar

from sqlalchemy import func
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from db.models import (
    GENERATION_ACTIVE,
    GENERATION_RETIRED,
    GENERATION_STAGING,
    Base,
    ImageRow,
    IndexGeneration,
    UnparsedImage,
)
from reconcile.errors import ParseFailure, StoreError, TransientStoreError
from reconcile.image_index import ImageIndex
from reconcile.records import LOW, ImageRecord

_log = logging.getLogger(__name__)

T = TypeVar("T")

# SQLite caps bound parameters per statement; keep IN lists well below it
_IN_CHUNK = 400


def call_with_retries(
    fn: Callable[..., T],
    *args: Any,
    retries: int = 3,
    backoff_base: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    what: str = "store call",
    **kwargs: Any,
) -> T:
    """Run ``fn`` and retry on ``TransientStoreError`` with exponential backoff.

    Only safe for idempotent calls. Other exceptions propagate immediately.
    """
    last_exc: Optional[TransientStoreError] = None
    for attempt in range(retries + 1):
        try:
            return fn(*args, **kwargs)
        except TransientStoreError as e:
            last_exc = e
            if attempt < retries:
                delay = backoff_base * (2 ** attempt)
                _log.warning("%s failed (attempt %d/%d), retrying in %.1fs: %s",
                             what, attempt + 1, retries + 1, delay, e)
                sleep(delay)
    assert last_exc is not None
    raise last_exc


def _chunks(items: Sequence[str], size: int = _IN_CHUNK) -> Iterator[Sequence[str]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class IndexStore:
    """Contract shared by the SQL store and the in-memory store."""

    def active_generation(self) -> Optional[int]:
        raise NotImplementedError

    def active_revision(self) -> Optional[Tuple[int, int]]:
        """``(generation, revision)`` of the active generation, or None.

        The revision grows with every committed write to the generation, so
        an incremental upsert changes it even though the id stays the same.
        """
        raise NotImplementedError

    def pending_staging(self) -> Optional[int]:
        """Newest staging generation left behind by an interrupted rebuild."""
        raise NotImplementedError

    def begin_staging(self) -> int:
        raise NotImplementedError

    def ensure_active(self) -> int:
        """Active generation id, creating an empty one on a fresh store."""
        raise NotImplementedError

    def upsert_page(self, generation: int, records: Sequence[ImageRecord],
                    unparsed: Sequence[ParseFailure] = ()) -> None:
        """Insert-or-replace one page by filename in a single transaction.

        A filename moves between the record and unparsed tables when its
        parse outcome changes.
        """
        raise NotImplementedError

    def delete(self, generation: int, filenames: Iterable[str]) -> int:
        raise NotImplementedError

    def known_locators(self, generation: int, filenames: Sequence[str]) -> Dict[str, Optional[str]]:
        """``filename -> storage_locator`` for the given names already stored."""
        raise NotImplementedError

    def scan_records(self, generation: int, page_size: int = 500) -> Iterator[ImageRecord]:
        """All records of a generation ordered by filename, read in pages."""
        raise NotImplementedError

    def scan_unparsed(self, generation: int) -> Iterator[ParseFailure]:
        raise NotImplementedError

    def list_unparsed(self, generation: int, limit: int = 100, offset: int = 0) -> List[ParseFailure]:
        raise NotImplementedError

    def count(self, generation: int) -> int:
        raise NotImplementedError

    def activate(self, generation: int) -> None:
        """Promote a staging generation and retire the current active one atomically."""
        raise NotImplementedError

    def discard(self, generation: int) -> None:
        raise NotImplementedError


@dataclass
class _MemGeneration:
    status: str
    records: Dict[str, ImageRecord] = field(default_factory=dict)
    unparsed: Dict[str, ParseFailure] = field(default_factory=dict)
    revision: int = 0


class MemoryIndexStore(IndexStore):
    """Dict-backed store with the same semantics; used by tests and dry runs."""

    def __init__(self) -> None:
        self._gens: Dict[int, _MemGeneration] = {}
        self._next_id = 1

    def _get(self, generation: int) -> _MemGeneration:
        try:
            return self._gens[generation]
        except KeyError:
            raise StoreError(f"unknown index generation {generation}") from None

    def _new(self, status: str) -> int:
        gid = self._next_id
        self._next_id += 1
        self._gens[gid] = _MemGeneration(status)
        return gid

    def _with_status(self, status: str) -> List[int]:
        return sorted(gid for gid, g in self._gens.items() if g.status == status)

    def active_generation(self) -> Optional[int]:
        active = self._with_status(GENERATION_ACTIVE)
        return active[-1] if active else None

    def active_revision(self) -> Optional[Tuple[int, int]]:
        gid = self.active_generation()
        return (gid, self._gens[gid].revision) if gid is not None else None

    def pending_staging(self) -> Optional[int]:
        staging = self._with_status(GENERATION_STAGING)
        return staging[-1] if staging else None

    def begin_staging(self) -> int:
        return self._new(GENERATION_STAGING)

    def ensure_active(self) -> int:
        gid = self.active_generation()
        return gid if gid is not None else self._new(GENERATION_ACTIVE)

    def upsert_page(self, generation, records, unparsed=()):
        gen = self._get(generation)
        parsed = set()
        for rec in records:
            gen.unparsed.pop(rec.filename, None)
            gen.records[rec.filename] = rec
            parsed.add(rec.filename)
        for failure in unparsed:
            if failure.filename in parsed:
                continue
            gen.records.pop(failure.filename, None)
            gen.unparsed[failure.filename] = failure
        gen.revision += 1

    def delete(self, generation, filenames):
        gen = self._get(generation)
        removed = 0
        for name in set(filenames):
            hit = gen.records.pop(name, None) is not None
            hit = (gen.unparsed.pop(name, None) is not None) or hit
            removed += int(hit)
        if removed:
            gen.revision += 1
        return removed

    def known_locators(self, generation, filenames):
        gen = self._get(generation)
        out: Dict[str, Optional[str]] = {}
        for name in filenames:
            if name in gen.records:
                out[name] = gen.records[name].storage_locator
            elif name in gen.unparsed:
                out[name] = gen.unparsed[name].storage_locator
        return out

    def scan_records(self, generation, page_size=500):
        gen = self._get(generation)
        for name in sorted(gen.records):
            yield gen.records[name]

    def scan_unparsed(self, generation):
        gen = self._get(generation)
        for name in sorted(gen.unparsed):
            yield gen.unparsed[name]

    def list_unparsed(self, generation, limit=100, offset=0):
        return list(self.scan_unparsed(generation))[offset:offset + limit]

    def count(self, generation):
        return len(self._get(generation).records)

    def activate(self, generation):
        gen = self._get(generation)
        if gen.status != GENERATION_STAGING:
            raise StoreError(f"generation {generation} is {gen.status}, not staging")
        for gid in self._with_status(GENERATION_ACTIVE):
            prev = self._gens[gid]
            prev.status = GENERATION_RETIRED
            prev.records.clear()
            prev.unparsed.clear()
        gen.status = GENERATION_ACTIVE
        gen.revision += 1

    def discard(self, generation):
        gen = self._get(generation)
        if gen.status == GENERATION_ACTIVE:
            raise StoreError(f"refusing to discard the active generation {generation}")
        del self._gens[generation]


def _to_record(row: ImageRow) -> ImageRecord:
    return ImageRecord(
        filename=row.filename,
        model_ref=row.model_ref,
        color=row.color,
        storage_locator=row.storage_locator,
        parse_confidence=row.parse_confidence or LOW,
        view_tag=row.view_tag or "",
    )


def _to_failure(row: UnparsedImage) -> ParseFailure:
    return ParseFailure(row.filename, row.reason or "", row.storage_locator)


class SqlIndexStore(IndexStore):
    """SQLAlchemy-backed store over ``index_generation``, ``image_record`` and ``unparsed_image``.

    ``OperationalError`` (locked database, dropped connection) surfaces as
    ``TransientStoreError`` so callers can retry; every other SQLAlchemy error
    becomes ``StoreError``.
    """

    def __init__(self, session_factory: Optional[Callable[[], ContextManager[Session]]] = None) -> None:
        if session_factory is None:
            from db.session import get_session
            session_factory = get_session
        self._session_factory = session_factory

    @classmethod
    def for_url(cls, db_url: str, create: bool = True) -> "SqlIndexStore":
        """Store bound to its own engine, independent of the global ``db.session`` one."""
        from db.session import _normalize_sqlite_url, make_engine

        eng = make_engine(_normalize_sqlite_url(db_url))
        if create:
            Base.metadata.create_all(bind=eng)
        factory = sessionmaker(bind=eng, autoflush=False, autocommit=False, class_=Session)

        @contextmanager
        def _session() -> Iterator[Session]:
            session = factory()
            try:
                yield session
            finally:
                session.close()

        return cls(_session)

    @contextmanager
    def _tx(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                yield session
                session.commit()
        except OperationalError as e:
            raise TransientStoreError(str(e.orig or e)) from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise TransientStoreError(str(e.orig or e)) from e
            raise StoreError(str(e.orig or e)) from e
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    def _latest(self, session: Session, status: str) -> Optional[int]:
        return (
            session.query(func.max(IndexGeneration.id))
            .filter(IndexGeneration.status == status)
            .scalar()
        )

    def _generation(self, session: Session, generation: int) -> IndexGeneration:
        gen = session.get(IndexGeneration, generation)
        if gen is None:
            raise StoreError(f"unknown index generation {generation}")
        return gen

    def active_generation(self) -> Optional[int]:
        with self._tx() as session:
            return self._latest(session, GENERATION_ACTIVE)

    def active_revision(self) -> Optional[Tuple[int, int]]:
        with self._tx() as session:
            gid = self._latest(session, GENERATION_ACTIVE)
            if gid is None:
                return None
            rev = session.query(IndexGeneration.revision).filter(IndexGeneration.id == gid).scalar()
            return gid, rev or 0

    def pending_staging(self) -> Optional[int]:
        with self._tx() as session:
            return self._latest(session, GENERATION_STAGING)

    def begin_staging(self) -> int:
        with self._tx() as session:
            gen = IndexGeneration(status=GENERATION_STAGING, origin="rebuild")
            session.add(gen)
            session.flush()
            return gen.id

    def ensure_active(self) -> int:
        with self._tx() as session:
            gid = self._latest(session, GENERATION_ACTIVE)
            if gid is not None:
                return gid
            gen = IndexGeneration(status=GENERATION_ACTIVE, origin="incremental", activated_at=datetime.utcnow())
            session.add(gen)
            session.flush()
            _log.info("created empty active index generation %d", gen.id)
            return gen.id

    def upsert_page(self, generation, records, unparsed=()):
        # last occurrence wins inside a page
        by_name = {r.filename: r for r in records}
        failed = {f.filename: f for f in unparsed if f.filename not in by_name}
        with self._tx() as session:
            gen = self._generation(session, generation)
            gen.revision = (gen.revision or 0) + 1
            names = sorted(by_name)
            for chunk in _chunks(names):
                existing = {
                    row.filename: row
                    for row in session.query(ImageRow)
                    .filter(ImageRow.generation_id == generation, ImageRow.filename.in_(chunk))
                }
                for name in chunk:
                    rec = by_name[name]
                    row = existing.get(name)
                    if row is None:
                        row = ImageRow(generation_id=generation, filename=name)
                        session.add(row)
                    row.model_ref = rec.model_ref
                    row.color = rec.color
                    row.view_tag = rec.view_tag or None
                    row.storage_locator = rec.storage_locator
                    row.parse_confidence = rec.parse_confidence
                session.query(UnparsedImage).filter(
                    UnparsedImage.generation_id == generation, UnparsedImage.filename.in_(chunk)
                ).delete(synchronize_session=False)
            fnames = sorted(failed)
            for chunk in _chunks(fnames):
                existing_u = {
                    row.filename: row
                    for row in session.query(UnparsedImage)
                    .filter(UnparsedImage.generation_id == generation, UnparsedImage.filename.in_(chunk))
                }
                for name in chunk:
                    failure = failed[name]
                    urow = existing_u.get(name)
                    if urow is None:
                        urow = UnparsedImage(generation_id=generation, filename=name)
                        session.add(urow)
                    urow.storage_locator = failure.storage_locator
                    urow.reason = failure.reason
                session.query(ImageRow).filter(
                    ImageRow.generation_id == generation, ImageRow.filename.in_(chunk)
                ).delete(synchronize_session=False)

    def delete(self, generation, filenames):
        names = sorted(set(filenames))
        removed = set()
        with self._tx() as session:
            for chunk in _chunks(names):
                for model in (ImageRow, UnparsedImage):
                    hits = [
                        n for (n,) in session.query(model.filename)
                        .filter(model.generation_id == generation, model.filename.in_(chunk))
                    ]
                    removed.update(hits)
                    session.query(model).filter(
                        model.generation_id == generation, model.filename.in_(chunk)
                    ).delete(synchronize_session=False)
            gen = session.get(IndexGeneration, generation)
            if removed and gen is not None:
                gen.revision = (gen.revision or 0) + 1
        return len(removed)

    def known_locators(self, generation, filenames):
        out: Dict[str, Optional[str]] = {}
        names = sorted(set(filenames))
        with self._tx() as session:
            for chunk in _chunks(names):
                for model in (UnparsedImage, ImageRow):
                    for name, locator in (
                        session.query(model.filename, model.storage_locator)
                        .filter(model.generation_id == generation, model.filename.in_(chunk))
                    ):
                        out[name] = locator
        return out

    def scan_records(self, generation, page_size=500):
        last = ""
        while True:
            with self._tx() as session:
                rows = (
                    session.query(ImageRow)
                    .filter(ImageRow.generation_id == generation, ImageRow.filename > last)
                    .order_by(ImageRow.filename)
                    .limit(page_size)
                    .all()
                )
                page = [_to_record(r) for r in rows]
            if not page:
                return
            yield from page
            last = page[-1].filename

    def scan_unparsed(self, generation):
        with self._tx() as session:
            rows = (
                session.query(UnparsedImage)
                .filter(UnparsedImage.generation_id == generation)
                .order_by(UnparsedImage.filename)
                .all()
            )
            failures = [_to_failure(r) for r in rows]
        yield from failures

    def list_unparsed(self, generation, limit=100, offset=0):
        with self._tx() as session:
            rows = (
                session.query(UnparsedImage)
                .filter(UnparsedImage.generation_id == generation)
                .order_by(UnparsedImage.filename)
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [_to_failure(r) for r in rows]

    def count(self, generation):
        with self._tx() as session:
            return (
                session.query(func.count(ImageRow.id))
                .filter(ImageRow.generation_id == generation)
                .scalar()
            ) or 0

    def activate(self, generation):
        with self._tx() as session:
            gen = self._generation(session, generation)
            if gen.status != GENERATION_STAGING:
                raise StoreError(f"generation {generation} is {gen.status}, not staging")
            now = datetime.utcnow()
            previous = session.query(IndexGeneration).filter(IndexGeneration.status == GENERATION_ACTIVE).all()
            retired_ids = [p.id for p in previous]
            for prev in previous:
                prev.status = GENERATION_RETIRED
                prev.retired_at = now
                session.query(ImageRow).filter(ImageRow.generation_id == prev.id).delete(synchronize_session=False)
                session.query(UnparsedImage).filter(
                    UnparsedImage.generation_id == prev.id
                ).delete(synchronize_session=False)
            gen.status = GENERATION_ACTIVE
            gen.activated_at = now
            gen.revision = (gen.revision or 0) + 1
            gen.record_count = (
                session.query(func.count(ImageRow.id)).filter(ImageRow.generation_id == generation).scalar()
            )
        _log.info("activated index generation %d (retired %s)", generation,
                  ", ".join(str(i) for i in retired_ids) or "none")

    def discard(self, generation):
        with self._tx() as session:
            gen = self._generation(session, generation)
            if gen.status == GENERATION_ACTIVE:
                raise StoreError(f"refusing to discard the active generation {generation}")
            session.query(ImageRow).filter(ImageRow.generation_id == generation).delete(synchronize_session=False)
            session.query(UnparsedImage).filter(
                UnparsedImage.generation_id == generation
            ).delete(synchronize_session=False)
            session.delete(gen)


def load_index(store: IndexStore, generation: Optional[int] = None, page_size: int = 500) -> ImageIndex:
    """Materialize the in-memory index from a stored generation (active by default).

    An empty store yields an empty index.
    """
    gid = generation if generation is not None else store.active_generation()
    if gid is None:
        return ImageIndex.build([])
    return ImageIndex.build(store.scan_records(gid, page_size=page_size), store.scan_unparsed(gid))
