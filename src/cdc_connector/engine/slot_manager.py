"""Replication slot and publication setup for the WAL engine."""

from __future__ import annotations

import structlog

logger = structlog.get_logger()


def format_lsn(lsn: int) -> str:
    """Render an integer LSN in PostgreSQL's ``X/Y`` text form."""
    return f"{lsn >> 32:X}/{lsn & 0xFFFFFFFF:X}"


def parse_lsn(text: str) -> int:
    hi, _, lo = text.partition("/")
    return (int(hi, 16) << 32) | int(lo, 16)


class SlotManager:
    """Makes sure the publication and logical slot the engine reads exist."""

    def __init__(self, dsn: str, slot_name: str, publication_name: str) -> None:
        self._dsn = dsn
        self._slot_name = slot_name
        self._publication_name = publication_name

    async def ensure(self, tables: list[str]) -> int | None:
        """Create what is missing; return the slot's confirmed flush LSN."""
        import psycopg

        async with await psycopg.AsyncConnection.connect(
            self._dsn, autocommit=True
        ) as conn:
            row = await (
                await conn.execute(
                    "SELECT 1 FROM pg_publication WHERE pubname = %s",
                    (self._publication_name,),
                )
            ).fetchone()
            if row is None:
                target = (
                    f"FOR TABLE {', '.join(tables)}" if tables else "FOR ALL TABLES"
                )
                await conn.execute(
                    f"CREATE PUBLICATION {self._publication_name} {target}"  # noqa: S608
                )
                logger.info(
                    "wal.publication_created",
                    name=self._publication_name,
                    tables=tables,
                )

            row = await (
                await conn.execute(
                    "SELECT confirmed_flush_lsn::text FROM pg_replication_slots "
                    "WHERE slot_name = %s",
                    (self._slot_name,),
                )
            ).fetchone()
            if row is None:
                await conn.execute(
                    "SELECT pg_create_logical_replication_slot(%s, 'pgoutput')",
                    (self._slot_name,),
                )
                logger.info("wal.slot_created", name=self._slot_name)
                return None

        confirmed = parse_lsn(row[0]) if row[0] else None
        logger.info(
            "wal.slot_exists",
            name=self._slot_name,
            confirmed_flush_lsn=row[0],
        )
        return confirmed

    async def current_lsn(self) -> int:
        import psycopg

        async with await psycopg.AsyncConnection.connect(
            self._dsn, autocommit=True
        ) as conn:
            row = await (await conn.execute("SELECT pg_current_wal_lsn()::text")).fetchone()
        assert row is not None
        return parse_lsn(row[0])
