from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
import re

from sqlalchemy import column, literal, select, table
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantforge.core.config import get_settings
from tenantforge.core.errors import ProviderConfigError


logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class AvailabilitySource:
    table: str
    column: str
    # Rows in this status no longer claim the slug (e.g. failed intents).
    exclude_status: str | None = None

    @property
    def label(self) -> str:
        return f"{self.table}.{self.column}"


def parse_availability_sources(raw: str) -> list[AvailabilitySource]:
    # Names come from configuration and end up in SQL; accept plain identifiers only.
    try:
        entries = json.loads(raw)
    except ValueError as exc:
        raise ProviderConfigError("AVAILABILITY_SOURCES_JSON is not valid JSON") from exc
    if not isinstance(entries, list) or not entries:
        raise ProviderConfigError("AVAILABILITY_SOURCES_JSON must be a non-empty list")
    sources: list[AvailabilitySource] = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ProviderConfigError("availability source entries must be objects")
        table_name = str(entry.get("table") or "")
        column_name = str(entry.get("column") or "")
        if not _IDENTIFIER.match(table_name) or not _IDENTIFIER.match(column_name):
            raise ProviderConfigError(f"invalid availability source: {entry!r}")
        exclude_status = entry.get("exclude_status")
        sources.append(
            AvailabilitySource(
                table=table_name,
                column=column_name,
                exclude_status=str(exclude_status) if exclude_status else None,
            )
        )
    return sources


def availability_sources_from_settings() -> list[AvailabilitySource]:
    return parse_availability_sources(get_settings().availability_sources_json)


class AvailabilityChecker:
    """Advisory slug availability check across every table that records slug usage.

    Each source is queried concurrently on its own session. The result only
    closes the obvious race before identity work starts; the unique
    constraint on ``tenants.slug`` remains the final authority.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sources: list[AvailabilitySource] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._sources = sources if sources is not None else availability_sources_from_settings()
        self._version = get_settings().availability_sources_version

    @property
    def sources(self) -> list[AvailabilitySource]:
        return list(self._sources)

    async def _slug_in_source(self, source: AvailabilitySource, slug: str) -> bool:
        target = table(source.table, column(source.column), column("status"))
        stmt = select(literal(1)).select_from(target).where(target.c[source.column] == slug)
        if source.exclude_status is not None:
            stmt = stmt.where(target.c.status != source.exclude_status)
        stmt = stmt.limit(1)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.first() is not None

    async def find_conflicts(self, slug: str) -> list[str]:
        found = await asyncio.gather(*(self._slug_in_source(source, slug) for source in self._sources))
        return [source.label for source, hit in zip(self._sources, found) if hit]

    async def is_available(self, slug: str) -> bool:
        conflicts = await self.find_conflicts(slug)
        if conflicts:
            logger.info(
                "slug_unavailable slug=%s sources=%s sources_version=%s",
                slug,
                ",".join(conflicts),
                self._version,
            )
            return False
        return True
