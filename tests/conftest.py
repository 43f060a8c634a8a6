import pytest

from helpdesk.tickets.workflow import TicketWorkflow
from ticket_factories import FIXED_NOW, FakeSecurity


@pytest.fixture
def staff_security() -> FakeSecurity:
    return FakeSecurity("alice", staff=True)


@pytest.fixture
def workflow(staff_security: FakeSecurity) -> TicketWorkflow:
    return TicketWorkflow(staff_security, clock=lambda: FIXED_NOW)
