from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from helpdesk.dependencies import auth as auth_deps
from helpdesk.dependencies import tickets as ticket_deps
from helpdesk.dependencies.auth import Role, User
from helpdesk.main import create_app
from helpdesk.tickets.activities import TicketActivity
from helpdesk.tickets.errors import NO_AUTH, TicketNotFoundError, TicketRuleError
from helpdesk.tickets.models import TicketPage
from helpdesk.tickets.state import TicketStatus
from ticket_factories import make_ticket


@pytest.fixture
def ticket_client():
    app = create_app()
    service = AsyncMock()
    current = {"user": User("alice", (Role.STAFF,))}

    async def override_service():
        return service

    app.dependency_overrides[ticket_deps.get_ticket_service] = override_service
    app.dependency_overrides[auth_deps.get_current_user] = lambda: current["user"]

    client = TestClient(app)
    try:
        yield client, service, current
    finally:
        app.dependency_overrides.clear()


def test_get_ticket_returns_detail(ticket_client):
    client, service, _ = ticket_client
    ticket = make_ticket(tag_list="printer")
    ticket.replace_tags(["printer"])
    service.get_ticket = AsyncMock(return_value=ticket)

    response = client.get("/tickets/7")

    assert response.status_code == 200
    body = response.json()
    assert body["ticket_id"] == 7
    assert body["current_status"] == "Active"
    assert body["tags"] == ["printer"]
    assert service.get_ticket.await_args.kwargs["actor"].current_user_name == "alice"


def test_unknown_ticket_is_404(ticket_client):
    client, service, _ = ticket_client
    service.get_ticket = AsyncMock(side_effect=TicketNotFoundError("Ticket 9 not found"))

    assert client.get("/tickets/9").status_code == 404


def test_create_ticket_defaults_owner_to_caller(ticket_client):
    client, service, _ = ticket_client
    service.create_ticket = AsyncMock(return_value=42)

    response = client.post(
        "/tickets",
        json={
            "title": "VPN down",
            "details": "Cannot connect",
            "category": "Network",
            "ticket_type": "Problem",
            "attachments": [{"file_id": 5, "file_name": "log.txt"}],
        },
    )

    assert response.status_code == 201
    assert response.json() == {"ticket_id": 42}
    created = service.create_ticket.await_args.args[0]
    assert created.owner == "alice"
    assert created.attachments[0].file_id == 5


def test_authorization_failure_maps_to_403(ticket_client):
    client, service, _ = ticket_client
    service.resolve = AsyncMock(side_effect=TicketRuleError.single(NO_AUTH, "User is not authorized to resolve ticket"))

    response = client.post("/tickets/7/resolve", json={"comment": "done"})

    assert response.status_code == 403
    assert response.json()["detail"] == {NO_AUTH: ["User is not authorized to resolve ticket"]}


def test_validation_failure_maps_to_422(ticket_client):
    client, service, _ = ticket_client
    service.add_comment = AsyncMock(side_effect=TicketRuleError.single("comment", "A comment is required"))

    response = client.post("/tickets/7/comments", json={"comment": ""})

    assert response.status_code == 422
    assert response.json()["detail"] == {"comment": ["A comment is required"]}


def test_failed_save_maps_to_409(ticket_client):
    client, service, _ = ticket_client
    service.take_over = AsyncMock(return_value=False)

    response = client.post("/tickets/7/take-over", json={"priority": "High"})

    assert response.status_code == 409
    service.get_ticket.assert_not_awaited()


def test_successful_operation_returns_refreshed_ticket(ticket_client):
    client, service, _ = ticket_client
    service.assign = AsyncMock(return_value=True)
    service.get_ticket = AsyncMock(return_value=make_ticket(assigned_to="carol"))

    response = client.post("/tickets/7/assign", json={"assign_to": "carol", "priority": "High"})

    assert response.status_code == 200
    assert response.json()["assigned_to"] == "carol"
    args, kwargs = service.assign.await_args
    assert args == (7, "carol", "")
    assert kwargs["priority"] == "High"


def test_edit_only_sends_supplied_fields(ticket_client):
    client, service, _ = ticket_client
    service.edit_ticket_details = AsyncMock(return_value=True)
    service.get_ticket = AsyncMock(return_value=make_ticket())

    response = client.patch("/tickets/7", json={"tag_list": "a,c", "comment": "retagged"})

    assert response.status_code == 200
    args = service.edit_ticket_details.await_args.args
    assert args == (7, {"tag_list": "a,c"}, "retagged")


def test_list_tickets_passes_filters_and_sort(ticket_client):
    client, service, _ = ticket_client
    service.list_tickets = AsyncMock(
        return_value=TicketPage(items=[make_ticket()], page=0, page_size=20, total_count=1)
    )

    response = client.get(
        "/tickets", params={"current_status": "Active", "sort": "-last_update_date", "owner": "bob"}
    )

    assert response.status_code == 200
    assert response.json()["total_count"] == 1
    kwargs = service.list_tickets.await_args.kwargs
    assert kwargs["filters"] == {"current_status": TicketStatus.ACTIVE, "owner": "bob"}
    assert kwargs["sort"] == [("last_update_date", "desc")]


def test_allowed_activities_endpoint(ticket_client):
    client, service, _ = ticket_client
    service.allowed_activities = AsyncMock(return_value=[TicketActivity.ADD_COMMENT, TicketActivity.RESOLVE])

    response = client.get("/tickets/7/activities")

    assert response.json() == ["AddComment", "Resolve"]


def test_tag_completions(ticket_client):
    client, service, _ = ticket_client
    service.get_tag_completion_list = AsyncMock(return_value=["network,printer"])

    response = client.get("/tickets/tags/completions", params={"partial": "network,pr"})

    assert response.json() == ["network,printer"]
    service.get_tag_completion_list.assert_awaited_once_with("network,pr", None)


def test_cleanup_requires_admin(ticket_client):
    client, service, current = ticket_client
    service.clean_up_derelict_attachments = AsyncMock(return_value=True)

    assert client.post("/tickets/attachments/cleanup", json={}).status_code == 403

    current["user"] = User("root", (Role.ADMIN, Role.STAFF))
    response = client.post("/tickets/attachments/cleanup", json={"hours_old": 24})
    assert response.json() == {"cleaned": True}
    service.clean_up_derelict_attachments.assert_awaited_once_with(24)


def test_ticket_routes_unavailable_without_service():
    client = TestClient(create_app())

    assert client.get("/tickets/7").status_code == 503


def test_ping():
    client = TestClient(create_app())

    assert client.get("/ping").json() == {"status": "ok"}


def test_metrics_snapshot_is_admin_only(ticket_client):
    client, _, current = ticket_client

    assert client.get("/ping/metrics").status_code == 403

    current["user"] = User("root", (Role.ADMIN,))
    body = client.get("/ping/metrics").json()
    assert body["user"] == "root"
    assert "ticket_workflow_operations_total" in body["metrics"]


def test_attachment_read_is_gated_by_caller_role(ticket_client):
    client, service, current = ticket_client
    service.get_attachment = AsyncMock(
        side_effect=TicketRuleError.single(NO_AUTH, "User is not authorized to view attachments")
    )
    current["user"] = User("anonymous", ())

    response = client.get("/tickets/attachments/5")

    assert response.status_code == 403
    assert service.get_attachment.await_args.kwargs["actor"].current_user_name == "anonymous"
