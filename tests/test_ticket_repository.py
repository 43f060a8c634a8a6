from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from helpdesk.tickets.models import TicketAttachment, TicketComment, TicketTag
from helpdesk.tickets.repository import PostgresTicketRepository
from helpdesk.tickets.state import TicketStatus
from ticket_factories import FIXED_NOW, make_ticket


class DummyAcquire:
    def __init__(self, connection):
        self._connection = connection

    async def __aenter__(self):
        return self._connection

    async def __aexit__(self, exc_type, exc, tb):
        return False


class DummyTransaction:
    def __init__(self):
        self.rolled_back = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.rolled_back = exc_type is not None
        return False


class DummyPool:
    def __init__(self, connection):
        self._connection = connection

    def acquire(self):
        return DummyAcquire(self._connection)


def _connection():
    connection = AsyncMock()
    connection.transaction = MagicMock(return_value=DummyTransaction())
    return connection


def _ticket_row(**overrides):
    row = {
        "ticket_id": 7,
        "title": "Printer on fire",
        "details": "Smoke",
        "category": "Hardware",
        "ticket_type": "Problem",
        "priority": "Normal",
        "owner": "bob",
        "assigned_to": None,
        "current_status": "Active",
        "current_status_date": FIXED_NOW,
        "current_status_set_by": "bob",
        "created_by": "bob",
        "created_date": FIXED_NOW,
        "last_update_by": "bob",
        "last_update_date": FIXED_NOW,
        "tag_list": "printer",
        "version": 2,
    }
    row.update(overrides)
    return row


def _executed(connection):
    return [call.args[0] for call in connection.execute.await_args_list]


@pytest.mark.asyncio
async def test_ensure_schema_creates_tables():
    connection = _connection()
    repository = PostgresTicketRepository(DummyPool(connection))

    await repository.ensure_schema()

    executed = _executed(connection)
    assert len(executed) == 4
    for table in ("tickets", "ticket_comments", "ticket_attachments", "ticket_tags"):
        assert any(f"CREATE TABLE IF NOT EXISTS {table} " in stmt for stmt in executed)


@pytest.mark.asyncio
async def test_get_ticket_aggregates_rows():
    connection = _connection()
    connection.fetchrow = AsyncMock(return_value=_ticket_row(current_status="More Info"))
    comment_row = {
        "comment_id": 1,
        "ticket_id": 7,
        "commented_by": "bob",
        "commented_date": FIXED_NOW,
        "comment_event": "created the ticket",
        "comment": "",
        "is_html": False,
        "recipients": ["bob"],
    }
    attachment_row = {
        "file_id": 3,
        "ticket_id": 7,
        "file_name": "smoke.jpg",
        "file_description": "",
        "file_size": 120,
        "file_type": "image/jpeg",
        "is_pending": False,
        "uploaded_by": "bob",
        "uploaded_date": FIXED_NOW,
    }
    connection.fetch = AsyncMock(side_effect=[[comment_row], [attachment_row], [{"tag_name": "printer"}]])
    repository = PostgresTicketRepository(DummyPool(connection))

    ticket = await repository.get_ticket(7)

    assert ticket is not None
    assert ticket.current_status is TicketStatus.MORE_INFO
    assert ticket.version == 2
    assert ticket.comments[0].recipients == ("bob",)
    assert ticket.attachments[0].file_name == "smoke.jpg"
    assert ticket.tags == {TicketTag("printer")}


@pytest.mark.asyncio
async def test_get_ticket_returns_none_when_missing():
    connection = _connection()
    connection.fetchrow = AsyncMock(return_value=None)
    repository = PostgresTicketRepository(DummyPool(connection))

    assert await repository.get_ticket(404) is None
    connection.fetch.assert_not_awaited()


@pytest.mark.asyncio
async def test_update_ticket_writes_staged_operations_and_new_comments():
    connection = _connection()
    connection.fetchrow = AsyncMock(return_value={"version": 4})
    connection.fetchval = AsyncMock(return_value=11)
    repository = PostgresTicketRepository(DummyPool(connection))
    ticket = make_ticket(tag_list="a")
    ticket.replace_tags(["a"])
    ticket.comments = [
        TicketComment(ticket_id=7, commented_by="bob", commented_date=FIXED_NOW, comment_event="old", comment_id=1),
        TicketComment(ticket_id=7, commented_by="alice", commented_date=FIXED_NOW, comment_event="edited"),
    ]

    await repository.clear_tags(ticket)
    assert connection.execute.await_count == 0

    saved = await repository.update_ticket(ticket)

    assert saved is True
    assert ticket.version == 4
    assert [comment.comment_id for comment in ticket.comments] == [1, 11]
    connection.fetchval.assert_awaited_once()
    executed = _executed(connection)
    assert "DELETE FROM ticket_tags" in executed[0]
    assert any("INSERT INTO ticket_tags" in stmt for stmt in executed)


@pytest.mark.asyncio
async def test_update_ticket_reports_lost_update():
    connection = _connection()
    connection.fetchrow = AsyncMock(return_value=None)
    repository = PostgresTicketRepository(DummyPool(connection))
    ticket = make_ticket()
    attachment = TicketAttachment(file_id=3, ticket_id=7, file_name="old.txt", is_pending=False)

    await repository.remove_attachment(attachment)
    saved = await repository.update_ticket(ticket)

    assert saved is False
    assert ticket.version == 3
    connection.execute.assert_not_awaited()
    assert connection.transaction.return_value.rolled_back is True

    connection.fetchrow = AsyncMock(return_value={"version": 4})
    assert await repository.update_ticket(ticket) is True
    assert not any("DELETE FROM ticket_attachments" in stmt for stmt in _executed(connection))


@pytest.mark.asyncio
async def test_create_ticket_assigns_id_and_commits_attachments():
    connection = _connection()
    connection.fetchrow = AsyncMock(return_value={"ticket_id": 42, "version": 0})
    connection.fetchval = AsyncMock(return_value=5)
    repository = PostgresTicketRepository(DummyPool(connection))
    ticket = make_ticket(ticket_id=None)
    ticket.attachments = [TicketAttachment(file_id=9, file_name="a.txt", is_pending=False)]
    ticket.comments = [
        TicketComment(ticket_id=None, commented_by="bob", commented_date=FIXED_NOW, comment_event="created the ticket")
    ]

    assert await repository.create_ticket(ticket) is True

    assert ticket.ticket_id == 42
    assert ticket.comments[0].ticket_id == 42
    assert ticket.attachments[0].ticket_id == 42
    save_call = connection.execute.await_args_list[-1]
    assert "UPDATE ticket_attachments" in save_call.args[0]
    assert save_call.args[1:] == (9, 42, "a.txt", "", False)


@pytest.mark.asyncio
async def test_list_tickets_filters_and_sorts_whitelisted_columns():
    connection = _connection()
    connection.fetchval = AsyncMock(return_value=1)
    connection.fetch = AsyncMock(return_value=[_ticket_row()])
    repository = PostgresTicketRepository(DummyPool(connection))

    page = await repository.list_tickets(
        1, 10, sort=[("priority", "desc")], filters={"current_status": TicketStatus.ACTIVE}
    )

    assert page.total_count == 1
    assert page.items[0].ticket_id == 7
    sql, *args = connection.fetch.await_args.args
    assert "WHERE current_status = $1" in sql
    assert "ORDER BY priority DESC" in sql
    assert args == ["Active", 10, 10]


@pytest.mark.asyncio
async def test_list_tickets_rejects_unknown_columns():
    repository = PostgresTicketRepository(DummyPool(_connection()))

    with pytest.raises(ValueError):
        await repository.list_tickets(0, 10, sort=[("details; DROP TABLE tickets", "asc")])


@pytest.mark.asyncio
async def test_get_ticket_changes_compares_with_stored_snapshot():
    connection = _connection()
    connection.fetchrow = AsyncMock(return_value=_ticket_row())
    connection.fetch = AsyncMock(side_effect=[[], [], []])
    repository = PostgresTicketRepository(DummyPool(connection))
    proposed = make_ticket(title="Printer on fire", details="Smoke", tag_list="printer", priority="High")

    changes = await repository.get_ticket_changes(proposed)

    assert changes == {"Priority": "Normal"}


@pytest.mark.asyncio
async def test_tag_prefix_search_escapes_wildcards():
    connection = _connection()
    connection.fetch = AsyncMock(return_value=[{"tag_name": "net_ops"}])
    repository = PostgresTicketRepository(DummyPool(connection))

    tags = await repository.get_distinct_tags_starting_with("net_", 5)

    assert tags == ["net_ops"]
    _, pattern, limit = connection.fetch.await_args.args
    assert pattern == "net\\_%"
    assert limit == 5


@pytest.mark.asyncio
async def test_add_pending_attachment_returns_generated_id():
    connection = _connection()
    connection.fetchval = AsyncMock(return_value=17)
    repository = PostgresTicketRepository(DummyPool(connection))
    attachment = TicketAttachment(file_name="trace.log", uploaded_by="bob", uploaded_date=FIXED_NOW)

    assert await repository.add_pending_attachment(attachment) == 17
    assert attachment.file_id == 17


@pytest.mark.asyncio
async def test_derelict_sweep_deletes_pending_uploads_before_cutoff():
    connection = _connection()
    connection.execute = AsyncMock(return_value="DELETE 2")
    repository = PostgresTicketRepository(DummyPool(connection), clock=lambda: FIXED_NOW)

    assert await repository.clean_up_derelict_attachments(48) is True

    statement, cutoff = connection.execute.await_args.args
    assert "DELETE FROM ticket_attachments WHERE is_pending AND uploaded_date < $1" in statement
    assert cutoff == FIXED_NOW - timedelta(hours=48)
