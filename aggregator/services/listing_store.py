"""
Durable listing store.

SQLAlchemy async persistence for everything that must survive a restart:

    - listings            one row per (platform, normalized url)
    - listing_categories  (platform, url, category) links used for coverage counts
    - search_snapshots    ordered result references of past live queries
    - job_progress        singleton checkpoint record per batch job

SQLite (aiosqlite) is the default backend; PostgreSQL (asyncpg) works with
the same code because every write is a dialect-level upsert. Driver and
connection failures surface as ``PersistenceUnavailableError``.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Iterable, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from aggregator.config.settings import Settings, get_settings
from aggregator.extractors.normalizer import normalize_url
from aggregator.models.schemas import (
    AggregateQuery,
    ExternalListing,
    ListingDetail,
    Platform,
    Quality,
    UpsertResult,
    utcnow,
)
from aggregator.utils.logger import get_logger
from aggregator.utils.retry import PersistenceUnavailableError

logger = get_logger(__name__)

# SQLite caps bound parameters per statement
IN_CLAUSE_CHUNK = 400

LISTING_FIELDS = (
    "title",
    "image",
    "description",
    "price",
    "price_min",
    "price_max",
    "currency",
    "moq",
    "moq_value",
    "store_name",
    "rating",
    "orders",
    "orders_count",
)


# =============================================================================
# Tables
# =============================================================================

class Base(DeclarativeBase):
    """Base class for all store tables."""

    pass


class ListingRow(Base):
    __tablename__ = "listings"
    __table_args__ = (UniqueConstraint("platform", "url", name="uq_listings_platform_url"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price_min: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    price_max: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    moq: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    moq_value: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    store_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rating: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    orders: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    orders_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    categories: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    terms: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Detail capture (backfill)
    detail_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    attribute_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    quality: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    detail_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ListingCategoryRow(Base):
    __tablename__ = "listing_categories"
    __table_args__ = (Index("ix_listing_categories_category", "category", "platform"),)

    platform: Mapped[str] = mapped_column(String(32), primary_key=True)
    url: Mapped[str] = mapped_column(Text, primary_key=True)
    category: Mapped[str] = mapped_column(String(128), primary_key=True)


class SearchSnapshotRow(Base):
    __tablename__ = "search_snapshots"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    q: Mapped[str] = mapped_column(Text, nullable=False)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    filters: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    urls: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class JobProgressRow(Base):
    __tablename__ = "job_progress"

    name: Mapped[str] = mapped_column(String(128), primary_key=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


@dataclass
class BackfillCandidate:
    """A stored listing whose detail capture needs another attempt."""
    id: int
    platform: Platform
    url: str
    quality: Quality
    image: Optional[str] = None


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _chunks(items: list, size: int = IN_CLAUSE_CHUNK) -> Iterable[list]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _row_to_listing(row: ListingRow) -> ExternalListing:
    data: dict[str, Any] = {name: getattr(row, name) for name in LISTING_FIELDS}
    return ExternalListing(
        platform=row.platform,
        url=row.url,
        categories=set(row.categories or []),
        terms=set(row.terms or []),
        **data,
    )


# =============================================================================
# Store
# =============================================================================

class ListingStore:
    """
    Async facade over the listing database.

    Example:
        >>> store = ListingStore(settings)
        >>> await store.init()
        >>> result = await store.upsert_listings(listings, categories=["led-strips"])
        >>> await store.count_for_category("led-strips")
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        database_url: Optional[str] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        self.settings = settings or get_settings()
        self.database_url = database_url or self.settings.database_url
        self._engine = engine
        self._sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None
        self._initialized = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _build_engine(self) -> AsyncEngine:
        kwargs: dict[str, Any] = {"echo": self.settings.database_echo}
        if self.database_url.startswith("sqlite") and ":memory:" in self.database_url:
            kwargs.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
        elif not self.database_url.startswith("sqlite"):
            kwargs.update(pool_pre_ping=True, pool_size=5, max_overflow=10)
        try:
            return create_async_engine(self.database_url, **kwargs)
        except (SQLAlchemyError, ImportError) as e:
            raise PersistenceUnavailableError(f"Cannot create database engine: {e}") from e

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = self._build_engine()
        return self._engine

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type((SQLAlchemyError, OSError)),
        reraise=True,
    )
    async def _create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def init(self) -> None:
        """Create tables if needed. Safe to call repeatedly."""
        if self._initialized:
            return
        try:
            await self._create_schema()
        except (SQLAlchemyError, OSError) as e:
            logger.warning("store_init_failed", dialect=self.database_url.split(":", 1)[0], error=str(e))
            raise PersistenceUnavailableError(f"Database unavailable: {e}") from e
        self._sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)
        self._initialized = True
        logger.debug("store_initialized", dialect=self.dialect)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None
        self._initialized = False

    async def __aenter__(self) -> "ListingStore":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Transactional session; driver errors become PersistenceUnavailableError."""
        await self.init()
        try:
            async with self._sessionmaker() as session:
                async with session.begin():
                    yield session
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceUnavailableError(f"Database operation failed: {e}") from e

    def _insert(self, table):
        if self.dialect == "postgresql":
            return pg_insert(table)
        if self.dialect == "sqlite":
            return sqlite_insert(table)
        raise PersistenceUnavailableError(f"Unsupported database dialect: {self.dialect}")

    # -------------------------------------------------------------------------
    # Listings
    # -------------------------------------------------------------------------

    async def upsert_listings(
        self,
        listings: Iterable[ExternalListing],
        categories: Iterable[str] = (),
        terms: Iterable[str] = (),
    ) -> UpsertResult:
        """
        Insert or update listings keyed by (platform, normalized url).

        Category and term tags are merged by set union with what is stored;
        every other field is overwritten only by non-null incoming values.
        ``newly_tagged`` counts listings that gained at least one category
        link they did not have before.
        """
        extra_categories = {c for c in categories if c}
        extra_terms = {t for t in terms if t}

        # Collapse duplicates in the batch, merging their tags
        batch: dict[tuple[str, str], ExternalListing] = {}
        for item in listings:
            url = normalize_url(item.url)
            if not url:
                continue
            key = (item.platform.value, url)
            if key in batch:
                prev = batch[key]
                batch[key] = prev.model_copy(update={
                    "categories": prev.categories | item.categories,
                    "terms": prev.terms | item.terms,
                })
            else:
                batch[key] = item
        if not batch:
            return UpsertResult()

        result = UpsertResult()
        now = utcnow()
        urls = sorted({url for _, url in batch})
        wanted_categories = extra_categories | {c for item in batch.values() for c in item.categories}

        async with self._session() as session:
            existing: dict[tuple[str, str], tuple[set, set]] = {}
            links: set[tuple[str, str, str]] = set()
            for chunk in _chunks(urls):
                rows = await session.execute(
                    select(ListingRow.platform, ListingRow.url, ListingRow.categories, ListingRow.terms)
                    .where(ListingRow.url.in_(chunk))
                )
                for platform, url, cats, tags in rows:
                    existing[(platform, url)] = (set(cats or []), set(tags or []))
                if wanted_categories:
                    link_rows = await session.execute(
                        select(ListingCategoryRow.platform, ListingCategoryRow.url, ListingCategoryRow.category)
                        .where(ListingCategoryRow.url.in_(chunk))
                        .where(ListingCategoryRow.category.in_(sorted(wanted_categories)))
                    )
                    links.update(tuple(r) for r in link_rows)

            for (platform, url), item in batch.items():
                known_categories, known_terms = existing.get((platform, url), (set(), set()))
                item_categories = item.categories | extra_categories
                values: dict[str, Any] = {"platform": platform, "url": url, "updated_at": now}
                for name in LISTING_FIELDS:
                    value = getattr(item, name)
                    if value is not None and value != "":
                        values[name] = value
                values["categories"] = sorted(known_categories | item_categories)
                values["terms"] = sorted(known_terms | item.terms | extra_terms)

                stmt = self._insert(ListingRow).values(
                    **{"title": "", **values, "created_at": now}
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["platform", "url"],
                    set_={k: stmt.excluded[k] for k in values if k not in ("platform", "url")},
                )
                await session.execute(stmt)

                if (platform, url) in existing:
                    result.updated += 1
                else:
                    result.inserted += 1

                new_links = [c for c in sorted(item_categories) if (platform, url, c) not in links]
                for category in new_links:
                    link = self._insert(ListingCategoryRow).values(
                        platform=platform, url=url, category=category
                    )
                    await session.execute(
                        link.on_conflict_do_nothing(index_elements=["platform", "url", "category"])
                    )
                if new_links:
                    result.newly_tagged += 1

        logger.debug(
            "listings_upserted",
            inserted=result.inserted,
            updated=result.updated,
            newly_tagged=result.newly_tagged,
        )
        return result

    async def get_listing(self, platform: Platform, url: str) -> Optional[ExternalListing]:
        async with self._session() as session:
            row = await session.scalar(
                select(ListingRow)
                .where(ListingRow.platform == Platform.parse(platform).value)
                .where(ListingRow.url == normalize_url(url))
            )
            return _row_to_listing(row) if row is not None else None

    async def count_listings(self, platform: Optional[Platform] = None) -> int:
        async with self._session() as session:
            stmt = select(func.count()).select_from(ListingRow)
            if platform is not None:
                stmt = stmt.where(ListingRow.platform == Platform.parse(platform).value)
            return int(await session.scalar(stmt) or 0)

    # -------------------------------------------------------------------------
    # Search snapshots
    # -------------------------------------------------------------------------

    async def save_search_snapshot(
        self,
        key: str,
        query: AggregateQuery,
        listings: Iterable[ExternalListing],
    ) -> int:
        """Store the ordered result references of a query. Returns their count."""
        refs = [[item.platform.value, normalize_url(item.url)] for item in listings]
        platform = query.platform if query.is_all else query.platform.value
        values = {
            "q": query.q,
            "platform": platform,
            "filters": query.filters.model_dump(),
            "urls": refs,
            "created_at": utcnow(),
        }
        stmt = self._insert(SearchSnapshotRow).values(key=key, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"],
            set_={k: stmt.excluded[k] for k in values},
        )
        async with self._session() as session:
            await session.execute(stmt)
        return len(refs)

    async def get_cached_search(
        self,
        key: str,
        offset: int,
        limit: int,
        max_age_minutes: Optional[int] = None,
    ) -> Optional[tuple[list[ExternalListing], int]]:
        """
        One page of a stored snapshot plus its total, or None when the
        snapshot is missing or older than ``max_age_minutes``.
        """
        max_age = timedelta(
            minutes=self.settings.snapshot_max_age_minutes if max_age_minutes is None else max_age_minutes
        )
        async with self._session() as session:
            snapshot = await session.get(SearchSnapshotRow, key)
            if snapshot is None:
                return None
            if utcnow() - _aware(snapshot.created_at) >= max_age:
                logger.debug("snapshot_stale", key=key)
                return None

            refs = [tuple(ref) for ref in (snapshot.urls or [])]
            page = refs[offset:offset + limit]
            rows: dict[tuple[str, str], ListingRow] = {}
            page_urls = sorted({url for _, url in page})
            for chunk in _chunks(page_urls):
                found = await session.scalars(select(ListingRow).where(ListingRow.url.in_(chunk)))
                for row in found:
                    rows[(row.platform, row.url)] = row

            items = [_row_to_listing(rows[ref]) for ref in page if ref in rows]
            return items, len(refs)

    # -------------------------------------------------------------------------
    # Coverage counts
    # -------------------------------------------------------------------------

    async def count_for_category(self, key: str, platform: Optional[Platform] = None) -> int:
        counts = await self.counts_for_categories([key], platform=platform)
        return counts.get(key, 0)

    async def counts_for_categories(
        self,
        keys: Iterable[str],
        platform: Optional[Platform] = None,
    ) -> dict[str, int]:
        wanted = sorted({k for k in keys if k})
        counts = {k: 0 for k in wanted}
        if not wanted:
            return counts
        async with self._session() as session:
            for chunk in _chunks(wanted):
                stmt = (
                    select(ListingCategoryRow.category, func.count())
                    .where(ListingCategoryRow.category.in_(chunk))
                    .group_by(ListingCategoryRow.category)
                )
                if platform is not None:
                    stmt = stmt.where(ListingCategoryRow.platform == Platform.parse(platform).value)
                for category, count in await session.execute(stmt):
                    counts[category] = int(count)
        return counts

    # -------------------------------------------------------------------------
    # Backfill
    # -------------------------------------------------------------------------

    async def list_backfill_candidates(
        self,
        platform: Platform,
        qualities: Iterable[Quality],
    ) -> list[BackfillCandidate]:
        """Stored listings of ``platform`` whose quality is in ``qualities``, oldest first."""
        wanted = {Quality(q) for q in qualities}
        if not wanted:
            return []
        conditions = []
        named = sorted(q.value for q in wanted)
        conditions.append(ListingRow.quality.in_(named))
        if Quality.MISSING in wanted:
            conditions.append(ListingRow.quality.is_(None))

        async with self._session() as session:
            rows = await session.execute(
                select(ListingRow.id, ListingRow.url, ListingRow.quality, ListingRow.image)
                .where(ListingRow.platform == Platform.parse(platform).value)
                .where(or_(*conditions))
                .order_by(ListingRow.id)
            )
            return [
                BackfillCandidate(
                    id=row_id,
                    platform=Platform.parse(platform),
                    url=url,
                    quality=Quality(quality) if quality else Quality.MISSING,
                    image=image,
                )
                for row_id, url, quality, image in rows
            ]

    async def record_detail(
        self,
        listing_id: int,
        detail: ListingDetail,
        quality: Quality,
        image: Optional[str] = None,
    ) -> bool:
        """Store a detail capture and its quality. Returns False for unknown ids."""
        values: dict[str, Any] = {
            "detail_json": detail.model_dump(mode="json"),
            "attribute_count": detail.attribute_count,
            "quality": Quality(quality).value,
            "detail_checked_at": utcnow(),
            "updated_at": utcnow(),
        }
        if image:
            values["image"] = image
        if detail.supplier_name:
            values["store_name"] = func.coalesce(ListingRow.store_name, detail.supplier_name)
        async with self._session() as session:
            result = await session.execute(
                update(ListingRow)
                .where(ListingRow.id == listing_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return (result.rowcount or 0) > 0

    # -------------------------------------------------------------------------
    # Job progress
    # -------------------------------------------------------------------------

    async def load_progress(self, name: str) -> Optional[dict[str, Any]]:
        async with self._session() as session:
            row = await session.get(JobProgressRow, name)
            return dict(row.payload) if row is not None else None

    async def save_progress(self, name: str, payload: dict[str, Any]) -> None:
        stmt = self._insert(JobProgressRow).values(name=name, payload=payload, updated_at=utcnow())
        stmt = stmt.on_conflict_do_update(
            index_elements=["name"],
            set_={"payload": stmt.excluded.payload, "updated_at": stmt.excluded.updated_at},
        )
        async with self._session() as session:
            await session.execute(stmt)

    async def clear_progress(self, name: str) -> None:
        async with self._session() as session:
            row = await session.get(JobProgressRow, name)
            if row is not None:
                await session.delete(row)


__all__ = [
    "BackfillCandidate",
    "Base",
    "JobProgressRow",
    "ListingCategoryRow",
    "ListingRow",
    "ListingStore",
    "SearchSnapshotRow",
]
