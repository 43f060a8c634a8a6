from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Protocol, Sequence

import asyncpg

from .changes import diff_ticket_fields
from .errors import TicketNotFoundError
from .models import Ticket, TicketAttachment, TicketComment, TicketPage, TicketTag, derelict_cutoff
from .state import TicketStatus

logger = logging.getLogger(__name__)


class TicketRepository(Protocol):
    """Storage collaborator used by the ticket service."""

    async def get_ticket(self, ticket_id: int) -> Ticket | None:
        ...

    async def list_tickets(
        self,
        page: int,
        page_size: int,
        sort: Sequence[tuple[str, str]] | None = None,
        filters: Mapping[str, Any] | None = None,
    ) -> TicketPage:
        ...

    async def create_ticket(self, ticket: Ticket) -> bool:
        ...

    async def update_ticket(self, ticket: Ticket) -> bool:
        ...

    async def get_ticket_changes(self, ticket: Ticket) -> dict[str, Any]:
        ...

    async def clear_tags(self, ticket: Ticket, commit: bool = False) -> None:
        ...

    async def add_pending_attachment(self, attachment: TicketAttachment) -> int:
        ...

    async def get_pending_attachment(self, file_id: int) -> TicketAttachment | None:
        ...

    async def get_attachment(self, file_id: int) -> TicketAttachment | None:
        ...

    async def remove_attachment(self, attachment: TicketAttachment, commit: bool = False) -> None:
        ...

    async def clean_up_derelict_attachments(self, hours_old: int) -> bool:
        ...

    async def get_distinct_tags_starting_with(self, prefix: str, max_count: int) -> list[str]:
        ...


class _VersionConflict(Exception):
    """Signals that another writer updated the ticket first."""


_TICKET_COLUMNS = """
    ticket_id, title, details, category, ticket_type, priority, owner, assigned_to,
    current_status, current_status_date, current_status_set_by, created_by, created_date,
    last_update_by, last_update_date, tag_list, version
"""

_ATTACHMENT_COLUMNS = """
    file_id, ticket_id, file_name, file_description, file_size, file_type, is_pending,
    uploaded_by, uploaded_date
"""

# Columns callers may sort or filter listings on.
_LISTABLE_COLUMNS = frozenset(
    {
        "ticket_id",
        "title",
        "category",
        "ticket_type",
        "priority",
        "owner",
        "assigned_to",
        "current_status",
        "created_by",
        "created_date",
        "last_update_date",
    }
)


class PostgresTicketRepository:
    """Persistence for tickets, comments, attachments and tags on PostgreSQL.

    Updates are conditional on the ticket's ``version`` so a lost update is reported as a
    failed save. Tag clearing and attachment removal requested with ``commit=False`` are
    staged and run inside the next ``update_ticket`` transaction for the same ticket.
    """

    _CREATE_TICKETS_SQL = """
    CREATE TABLE IF NOT EXISTS tickets (
        ticket_id SERIAL PRIMARY KEY,
        title TEXT NOT NULL,
        details TEXT NOT NULL,
        category TEXT NOT NULL,
        ticket_type TEXT NOT NULL,
        priority TEXT NOT NULL DEFAULT '',
        owner TEXT NOT NULL,
        assigned_to TEXT NULL,
        current_status TEXT NOT NULL,
        current_status_date TIMESTAMPTZ NOT NULL,
        current_status_set_by TEXT NOT NULL,
        created_by TEXT NOT NULL,
        created_date TIMESTAMPTZ NOT NULL,
        last_update_by TEXT NOT NULL,
        last_update_date TIMESTAMPTZ NOT NULL,
        tag_list TEXT NOT NULL DEFAULT '',
        version INTEGER NOT NULL DEFAULT 0
    )
    """

    _CREATE_COMMENTS_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_comments (
        comment_id SERIAL PRIMARY KEY,
        ticket_id INTEGER NOT NULL REFERENCES tickets(ticket_id) ON DELETE CASCADE,
        commented_by TEXT NOT NULL,
        commented_date TIMESTAMPTZ NOT NULL,
        comment_event TEXT NOT NULL,
        comment TEXT NOT NULL DEFAULT '',
        is_html BOOLEAN NOT NULL DEFAULT FALSE,
        recipients TEXT[] NOT NULL DEFAULT '{}'
    )
    """

    _CREATE_ATTACHMENTS_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_attachments (
        file_id SERIAL PRIMARY KEY,
        ticket_id INTEGER NULL REFERENCES tickets(ticket_id) ON DELETE CASCADE,
        file_name TEXT NOT NULL,
        file_description TEXT NOT NULL DEFAULT '',
        file_size INTEGER NOT NULL DEFAULT 0,
        file_type TEXT NOT NULL DEFAULT '',
        is_pending BOOLEAN NOT NULL DEFAULT TRUE,
        uploaded_by TEXT NOT NULL,
        uploaded_date TIMESTAMPTZ NOT NULL
    )
    """

    _CREATE_TAGS_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_tags (
        ticket_id INTEGER NOT NULL REFERENCES tickets(ticket_id) ON DELETE CASCADE,
        tag_name TEXT NOT NULL,
        PRIMARY KEY (ticket_id, tag_name)
    )
    """

    _INSERT_TICKET_SQL = """
    INSERT INTO tickets (
        title, details, category, ticket_type, priority, owner, assigned_to, current_status,
        current_status_date, current_status_set_by, created_by, created_date, last_update_by,
        last_update_date, tag_list
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
    RETURNING ticket_id, version
    """

    _UPDATE_TICKET_SQL = """
    UPDATE tickets
    SET title = $3,
        details = $4,
        category = $5,
        ticket_type = $6,
        priority = $7,
        owner = $8,
        assigned_to = $9,
        current_status = $10,
        current_status_date = $11,
        current_status_set_by = $12,
        last_update_by = $13,
        last_update_date = $14,
        tag_list = $15,
        version = version + 1
    WHERE ticket_id = $1 AND version = $2
    RETURNING version
    """

    _INSERT_COMMENT_SQL = """
    INSERT INTO ticket_comments (ticket_id, commented_by, commented_date, comment_event, comment, is_html, recipients)
    VALUES ($1, $2, $3, $4, $5, $6, $7)
    RETURNING comment_id
    """

    _INSERT_TAG_SQL = """
    INSERT INTO ticket_tags (ticket_id, tag_name)
    VALUES ($1, $2)
    ON CONFLICT DO NOTHING
    """

    _DELETE_TAGS_SQL = """
    DELETE FROM ticket_tags WHERE ticket_id = $1
    """

    _INSERT_ATTACHMENT_SQL = """
    INSERT INTO ticket_attachments (
        ticket_id, file_name, file_description, file_size, file_type, is_pending, uploaded_by, uploaded_date
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
    RETURNING file_id
    """

    _SAVE_ATTACHMENT_SQL = """
    UPDATE ticket_attachments
    SET ticket_id = $2, file_name = $3, file_description = $4, is_pending = $5
    WHERE file_id = $1
    """

    _DELETE_ATTACHMENT_SQL = """
    DELETE FROM ticket_attachments WHERE file_id = $1
    """

    _DELETE_DERELICT_ATTACHMENTS_SQL = """
    DELETE FROM ticket_attachments WHERE is_pending AND uploaded_date < $1
    """

    _SELECT_TICKET_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE ticket_id = $1
    """

    _SELECT_COMMENTS_SQL = """
    SELECT comment_id, ticket_id, commented_by, commented_date, comment_event, comment, is_html, recipients
    FROM ticket_comments
    WHERE ticket_id = $1
    ORDER BY commented_date ASC, comment_id ASC
    """

    _SELECT_ATTACHMENTS_SQL = f"""
    SELECT {_ATTACHMENT_COLUMNS}
    FROM ticket_attachments
    WHERE ticket_id = $1
    ORDER BY file_id ASC
    """

    _SELECT_ATTACHMENT_SQL = f"""
    SELECT {_ATTACHMENT_COLUMNS}
    FROM ticket_attachments
    WHERE file_id = $1
    """

    _SELECT_PENDING_ATTACHMENT_SQL = f"""
    SELECT {_ATTACHMENT_COLUMNS}
    FROM ticket_attachments
    WHERE file_id = $1 AND is_pending
    """

    _SELECT_TAGS_SQL = """
    SELECT tag_name FROM ticket_tags WHERE ticket_id = $1 ORDER BY tag_name
    """

    _SELECT_DISTINCT_TAGS_SQL = """
    SELECT DISTINCT tag_name
    FROM ticket_tags
    WHERE lower(tag_name) LIKE lower($1) ESCAPE '\\'
    ORDER BY tag_name
    LIMIT $2
    """

    def __init__(self, pool: asyncpg.Pool, *, clock: Callable[[], datetime] | None = None) -> None:
        self._pool = pool
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._staged: dict[int, list[tuple[str, tuple[Any, ...]]]] = {}

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_TICKETS_SQL)
            await connection.execute(self._CREATE_COMMENTS_SQL)
            await connection.execute(self._CREATE_ATTACHMENTS_SQL)
            await connection.execute(self._CREATE_TAGS_SQL)

    async def get_ticket(self, ticket_id: int) -> Ticket | None:
        async with self._pool.acquire() as connection:
            ticket_row = await connection.fetchrow(self._SELECT_TICKET_SQL, ticket_id)
            if ticket_row is None:
                return None
            comment_rows = await connection.fetch(self._SELECT_COMMENTS_SQL, ticket_id)
            attachment_rows = await connection.fetch(self._SELECT_ATTACHMENTS_SQL, ticket_id)
            tag_rows = await connection.fetch(self._SELECT_TAGS_SQL, ticket_id)

        ticket = self._row_to_ticket(ticket_row)
        ticket.comments = [self._row_to_comment(row) for row in comment_rows]
        ticket.attachments = [self._row_to_attachment(row) for row in attachment_rows]
        ticket.tags = {TicketTag(tag_name=str(row["tag_name"])) for row in tag_rows}
        return ticket

    async def list_tickets(
        self,
        page: int,
        page_size: int,
        sort: Sequence[tuple[str, str]] | None = None,
        filters: Mapping[str, Any] | None = None,
    ) -> TicketPage:
        conditions: list[str] = []
        params: list[Any] = []
        for column, value in (filters or {}).items():
            _ensure_listable(column)
            params.append(value.value if isinstance(value, TicketStatus) else value)
            conditions.append(f"{column} = ${len(params)}")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        ordering: list[str] = []
        for column, direction in sort or ():
            _ensure_listable(column)
            ordering.append(f"{column} {'DESC' if direction.lower() == 'desc' else 'ASC'}")
        order_by = ", ".join(ordering) or "last_update_date DESC"

        page = max(page, 0)
        page_size = max(page_size, 1)
        count_sql = f"SELECT count(*) FROM tickets {where}"
        select_sql = (
            f"SELECT {_TICKET_COLUMNS} FROM tickets {where} ORDER BY {order_by} "
            f"LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}"
        )
        async with self._pool.acquire() as connection:
            total = await connection.fetchval(count_sql, *params)
            rows = await connection.fetch(select_sql, *params, page_size, page * page_size)
        return TicketPage(
            items=[self._row_to_ticket(row) for row in rows],
            page=page,
            page_size=page_size,
            total_count=int(total or 0),
        )

    async def create_ticket(self, ticket: Ticket) -> bool:
        try:
            async with self._pool.acquire() as connection:
                async with connection.transaction():
                    row = await connection.fetchrow(
                        self._INSERT_TICKET_SQL,
                        ticket.title,
                        ticket.details,
                        ticket.category,
                        ticket.ticket_type,
                        ticket.priority,
                        ticket.owner,
                        ticket.assigned_to,
                        ticket.current_status.value,
                        ticket.current_status_date,
                        ticket.current_status_set_by,
                        ticket.created_by,
                        ticket.created_date,
                        ticket.last_update_by,
                        ticket.last_update_date,
                        ticket.tag_list,
                    )
                    if row is None:
                        raise RuntimeError("Failed to insert ticket")
                    ticket.ticket_id = int(row["ticket_id"])
                    ticket.version = int(row["version"])
                    await self._write_children(connection, ticket)
        except asyncpg.PostgresError:
            logger.exception("Failed to create ticket '%s'", ticket.title)
            return False
        return True

    async def update_ticket(self, ticket: Ticket) -> bool:
        if ticket.ticket_id is None:
            raise TicketNotFoundError("Cannot update a ticket that has not been created")
        staged = self._staged.pop(ticket.ticket_id, [])
        try:
            async with self._pool.acquire() as connection:
                async with connection.transaction():
                    row = await connection.fetchrow(
                        self._UPDATE_TICKET_SQL,
                        ticket.ticket_id,
                        ticket.version,
                        ticket.title,
                        ticket.details,
                        ticket.category,
                        ticket.ticket_type,
                        ticket.priority,
                        ticket.owner,
                        ticket.assigned_to,
                        ticket.current_status.value,
                        ticket.current_status_date,
                        ticket.current_status_set_by,
                        ticket.last_update_by,
                        ticket.last_update_date,
                        ticket.tag_list,
                    )
                    if row is None:
                        raise _VersionConflict()
                    for statement, args in staged:
                        await connection.execute(statement, *args)
                    await self._write_children(connection, ticket)
        except _VersionConflict:
            logger.warning("Ticket %s was modified concurrently; update discarded", ticket.ticket_id)
            return False
        except asyncpg.PostgresError:
            logger.exception("Failed to update ticket %s", ticket.ticket_id)
            return False
        ticket.version = int(row["version"])
        return True

    async def get_ticket_changes(self, ticket: Ticket) -> dict[str, Any]:
        if ticket.ticket_id is None:
            raise TicketNotFoundError("Ticket has not been created")
        previous = await self.get_ticket(ticket.ticket_id)
        if previous is None:
            raise TicketNotFoundError(f"Ticket {ticket.ticket_id} not found")
        return diff_ticket_fields(previous, ticket)

    async def clear_tags(self, ticket: Ticket, commit: bool = False) -> None:
        if ticket.ticket_id is None:
            return
        await self._run_or_stage(ticket.ticket_id, self._DELETE_TAGS_SQL, (ticket.ticket_id,), commit=commit)

    async def add_pending_attachment(self, attachment: TicketAttachment) -> int:
        async with self._pool.acquire() as connection:
            file_id = await connection.fetchval(
                self._INSERT_ATTACHMENT_SQL,
                attachment.ticket_id,
                attachment.file_name,
                attachment.file_description,
                attachment.file_size,
                attachment.file_type,
                attachment.is_pending,
                attachment.uploaded_by,
                attachment.uploaded_date,
            )
        attachment.file_id = int(file_id)
        return attachment.file_id

    async def get_pending_attachment(self, file_id: int) -> TicketAttachment | None:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT_PENDING_ATTACHMENT_SQL, file_id)
        return None if row is None else self._row_to_attachment(row)

    async def get_attachment(self, file_id: int) -> TicketAttachment | None:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT_ATTACHMENT_SQL, file_id)
        return None if row is None else self._row_to_attachment(row)

    async def remove_attachment(self, attachment: TicketAttachment, commit: bool = False) -> None:
        if attachment.file_id is None:
            return
        args = (attachment.file_id,)
        if attachment.ticket_id is None:
            await self._run_or_stage(None, self._DELETE_ATTACHMENT_SQL, args, commit=True)
            return
        await self._run_or_stage(attachment.ticket_id, self._DELETE_ATTACHMENT_SQL, args, commit=commit)

    async def clean_up_derelict_attachments(self, hours_old: int) -> bool:
        """Delete pending uploads matching :meth:`TicketAttachment.is_derelict`."""

        cutoff = derelict_cutoff(hours_old, self._clock())
        async with self._pool.acquire() as connection:
            result = await connection.execute(self._DELETE_DERELICT_ATTACHMENTS_SQL, cutoff)
        logger.info("Derelict attachment sweep older than %sh: %s", hours_old, result)
        return True

    async def get_distinct_tags_starting_with(self, prefix: str, max_count: int) -> list[str]:
        pattern = _escape_like(prefix) + "%"
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_DISTINCT_TAGS_SQL, pattern, max_count)
        return [str(row["tag_name"]) for row in rows]

    async def _run_or_stage(
        self, ticket_id: int | None, statement: str, args: tuple[Any, ...], *, commit: bool
    ) -> None:
        if commit or ticket_id is None:
            async with self._pool.acquire() as connection:
                await connection.execute(statement, *args)
            return
        self._staged.setdefault(ticket_id, []).append((statement, args))

    async def _write_children(self, connection: Any, ticket: Ticket) -> None:
        persisted: list[TicketComment] = []
        for comment in ticket.comments:
            if comment.comment_id is not None:
                persisted.append(comment)
                continue
            comment_id = await connection.fetchval(
                self._INSERT_COMMENT_SQL,
                ticket.ticket_id,
                comment.commented_by,
                comment.commented_date,
                comment.comment_event,
                comment.comment,
                comment.is_html,
                list(comment.recipients),
            )
            persisted.append(replace(comment, ticket_id=ticket.ticket_id, comment_id=int(comment_id)))
        ticket.comments = persisted

        for tag in sorted(ticket.tags, key=lambda item: item.tag_name):
            await connection.execute(self._INSERT_TAG_SQL, ticket.ticket_id, tag.tag_name)

        for attachment in ticket.attachments:
            attachment.ticket_id = ticket.ticket_id
            await connection.execute(
                self._SAVE_ATTACHMENT_SQL,
                attachment.file_id,
                ticket.ticket_id,
                attachment.file_name,
                attachment.file_description,
                attachment.is_pending,
            )

    @staticmethod
    def _row_to_ticket(row: Mapping[str, Any]) -> Ticket:
        return Ticket(
            ticket_id=int(row["ticket_id"]),
            title=str(row["title"]),
            details=str(row["details"]),
            category=str(row["category"]),
            ticket_type=str(row["ticket_type"]),
            priority=str(row["priority"] or ""),
            owner=row["owner"],
            assigned_to=row["assigned_to"],
            current_status=TicketStatus(str(row["current_status"])),
            current_status_date=_ensure_datetime(row["current_status_date"]),
            current_status_set_by=row["current_status_set_by"],
            created_by=row["created_by"],
            created_date=_ensure_datetime(row["created_date"]),
            last_update_by=row["last_update_by"],
            last_update_date=_ensure_datetime(row["last_update_date"]),
            tag_list=str(row["tag_list"] or ""),
            version=int(row["version"]),
        )

    @staticmethod
    def _row_to_comment(row: Mapping[str, Any]) -> TicketComment:
        return TicketComment(
            comment_id=int(row["comment_id"]),
            ticket_id=int(row["ticket_id"]),
            commented_by=str(row["commented_by"]),
            commented_date=_ensure_datetime(row["commented_date"]),
            comment_event=str(row["comment_event"]),
            comment=str(row["comment"] or ""),
            is_html=bool(row["is_html"]),
            recipients=tuple(row.get("recipients") or ()),
        )

    @staticmethod
    def _row_to_attachment(row: Mapping[str, Any]) -> TicketAttachment:
        ticket_id = row.get("ticket_id")
        return TicketAttachment(
            file_id=int(row["file_id"]),
            ticket_id=int(ticket_id) if ticket_id is not None else None,
            file_name=str(row["file_name"]),
            file_description=str(row.get("file_description") or ""),
            file_size=int(row.get("file_size") or 0),
            file_type=str(row.get("file_type") or ""),
            is_pending=bool(row["is_pending"]),
            uploaded_by=str(row["uploaded_by"]),
            uploaded_date=_ensure_datetime(row["uploaded_date"]),
        )


def _ensure_listable(column: str) -> None:
    if column not in _LISTABLE_COLUMNS:
        raise ValueError(f"Cannot sort or filter tickets by '{column}'")


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _ensure_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.fromisoformat(str(value))
