"""
Surrogate Key Registry: durable (entity type, business key) -> surrogate key.

Keys come from one monotonic sequence, are never reused and never reassigned.
Allocation is an idempotent INSERT ... ON CONFLICT DO NOTHING followed by a
read, so concurrent callers (in this process or another) for the same
business key always receive the same key.
"""

from typing import Dict, Iterable, List, Optional, Tuple
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.database import dialect_insert
from core.exceptions import ConcurrencyConflict
from core.retry import RetryPolicy
from models.base import utcnow
from models.registry import SurrogateKeyMapping
from pipeline.locks import KeyedLock

logger = logging.getLogger(__name__)

_LOOKUP_CHUNK = 500


class SurrogateKeyRegistry:
    """
    Allocate and look up surrogate keys.

    Mappings are immutable once written, so resolved keys are cached for the
    life of the registry instance.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        retry_policy: Optional[RetryPolicy] = None,
        locks: Optional[KeyedLock] = None
    ):
        self.session_factory = session_factory
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._locks = locks or KeyedLock()
        self._cache: Dict[Tuple[str, str], int] = {}

    async def assign_or_get(self, entity_type: str, business_key: str) -> int:
        """
        Return the surrogate key for a business key, allocating it on first sight.

        Raises:
            ValueError: Empty entity type or business key
            PersistenceUnavailableError: The registry store stayed unreachable
        """
        self._check_key(entity_type, business_key)
        cache_key = (entity_type, business_key)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        async with self._locks.hold(("registry", entity_type, business_key)):
            cached = self._cache.get(cache_key)
            if cached is not None:
                return cached

            surrogate_key = await self.retry_policy.run(
                lambda: self._allocate(entity_type, business_key),
                op_name="registry.assign_or_get",
                context={"entity_type": entity_type, "business_key": business_key}
            )
            self._cache[cache_key] = surrogate_key
            return surrogate_key

    async def lookup(self, entity_type: str, business_key: str) -> Optional[int]:
        """Read-only lookup; never allocates."""
        self._check_key(entity_type, business_key)
        cache_key = (entity_type, business_key)
        if cache_key in self._cache:
            return self._cache[cache_key]

        surrogate_key = await self.retry_policy.run(
            lambda: self._select_one(entity_type, business_key),
            op_name="registry.lookup",
            context={"entity_type": entity_type, "business_key": business_key}
        )
        if surrogate_key is not None:
            self._cache[cache_key] = surrogate_key
        return surrogate_key

    async def lookup_many(self, entity_type: str, business_keys: Iterable[str]) -> Dict[str, int]:
        """Read-only bulk lookup; unknown business keys are absent from the result."""
        wanted = sorted(set(business_keys))
        found: Dict[str, int] = {}
        missing: List[str] = []
        for business_key in wanted:
            cached = self._cache.get((entity_type, business_key))
            if cached is None:
                missing.append(business_key)
            else:
                found[business_key] = cached

        for i in range(0, len(missing), _LOOKUP_CHUNK):
            chunk = missing[i:i + _LOOKUP_CHUNK]
            rows = await self.retry_policy.run(
                lambda: self._select_many(entity_type, chunk),
                op_name="registry.lookup_many",
                context={"entity_type": entity_type, "keys": len(chunk)}
            )
            for business_key, surrogate_key in rows.items():
                self._cache[(entity_type, business_key)] = surrogate_key
                found[business_key] = surrogate_key

        return found

    async def _allocate(self, entity_type: str, business_key: str) -> int:
        async with self.session_factory() as session:
            existing = await self._select(session, entity_type, business_key)
            if existing is not None:
                return existing

            stmt = dialect_insert(session, SurrogateKeyMapping.__table__).values(
                entity_type=entity_type,
                business_key=business_key,
                first_seen_at=utcnow(),
            ).on_conflict_do_nothing(index_elements=["entity_type", "business_key"])
            await session.execute(stmt)
            await session.commit()

            surrogate_key = await self._select(session, entity_type, business_key)
            if surrogate_key is None:
                raise ConcurrencyConflict(
                    "Registry row vanished after allocation",
                    context={"entity_type": entity_type, "business_key": business_key}
                )

        logger.debug(f"Registry: {entity_type}/{business_key} -> {surrogate_key}")
        return surrogate_key

    async def _select_one(self, entity_type: str, business_key: str) -> Optional[int]:
        async with self.session_factory() as session:
            return await self._select(session, entity_type, business_key)

    async def _select_many(self, entity_type: str, business_keys: List[str]) -> Dict[str, int]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SurrogateKeyMapping.business_key, SurrogateKeyMapping.surrogate_key).where(
                    SurrogateKeyMapping.entity_type == entity_type,
                    SurrogateKeyMapping.business_key.in_(business_keys),
                )
            )
            return {business_key: surrogate_key for business_key, surrogate_key in result.all()}

    @staticmethod
    async def _select(session, entity_type: str, business_key: str) -> Optional[int]:
        result = await session.execute(
            select(SurrogateKeyMapping.surrogate_key).where(
                SurrogateKeyMapping.entity_type == entity_type,
                SurrogateKeyMapping.business_key == business_key,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _check_key(entity_type: str, business_key: str) -> None:
        if not entity_type or not business_key:
            raise ValueError(f"Entity type and business key must be non-empty: {entity_type!r}/{business_key!r}")
