import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))
import ticketing  # noqa: E402

ADMIN = {"id": "admin-1", "role": "Administrador"}
EXECUTIVE = {"id": "exec-1", "role": "Ejecutivo"}


def make_ticket(ticket_id, **overrides):
    ticket = {
        "id": ticket_id,
        "user_id": "exec-1",
        "user_name": "Elena Ejecutiva",
        "title": f"Ticket {ticket_id}",
        "type": "Consulta",
        "area": "Comercial",
        "status": "Enviado",
        "priority": 50,
        "created_at": "2026-01-10T10:00:00Z",
    }
    ticket.update(overrides)
    return ticket


def test_permitted_views_by_role():
    assert ticketing.permitted_views("Ejecutivo") == ("dashboard", "kanban", "create")
    assert ticketing.permitted_views("Administrador") == ("dashboard", "kanban", "analytics", "users")
    assert ticketing.permitted_views(None) == ()
    assert not ticketing.can_access("Ejecutivo", "users")
    assert ticketing.can_access("Administrador", "analytics")
    assert not ticketing.can_access("Administrador", "create")


def test_only_admins_move_tickets():
    assert ticketing.can_move_tickets(ADMIN)
    assert not ticketing.can_move_tickets(EXECUTIVE)
    assert not ticketing.can_move_tickets(None)


@pytest.mark.parametrize("value, expected", [("0", 0), ("100", 100), (85, 85), (" 40 ", 40)])
def test_validate_priority_accepts_range(value, expected):
    assert ticketing.validate_priority(value) == expected


@pytest.mark.parametrize("value", ["-1", "101", "alta", None, "4.5"])
def test_validate_priority_rejects_invalid(value):
    with pytest.raises(ValueError):
        ticketing.validate_priority(value)


def test_executive_sees_only_own_tickets():
    tickets = [make_ticket("T-1001"), make_ticket("T-1002", user_id="exec-2")]

    assert [t["id"] for t in ticketing.visible_tickets(tickets, EXECUTIVE)] == ["T-1001"]
    assert len(ticketing.visible_tickets(tickets, ADMIN)) == 2
    assert ticketing.visible_tickets(tickets, None) == []


def test_search_is_case_insensitive_over_id_title_area_and_requester():
    tickets = [
        make_ticket("T-1001", title="Cotizador lento"),
        make_ticket("T-1002", area="Marketing"),
        make_ticket("T-1003", user_name="Pedro Soto"),
    ]

    assert [t["id"] for t in ticketing.search_tickets(tickets, "COTIZADOR")] == ["T-1001"]
    assert [t["id"] for t in ticketing.search_tickets(tickets, "market")] == ["T-1002"]
    assert [t["id"] for t in ticketing.search_tickets(tickets, "soto")] == ["T-1003"]
    assert [t["id"] for t in ticketing.search_tickets(tickets, "t-1002")] == ["T-1002"]
    assert len(ticketing.search_tickets(tickets, "   ")) == 3


def test_priority_order_breaks_ties_by_recency_then_id():
    tickets = [
        make_ticket("T-1003", priority=70, created_at="2026-01-10T10:00:00Z"),
        make_ticket("T-1001", priority=70, created_at="2026-01-10T10:00:00Z"),
        make_ticket("T-1002", priority=70, created_at="2026-02-01T10:00:00Z"),
        make_ticket("T-1004", priority=95, created_at="2025-06-01T10:00:00Z"),
        make_ticket("T-1005", priority=10, created_at="2026-03-01T10:00:00Z"),
    ]

    ordered = [t["id"] for t in ticketing.sort_by_priority(tickets)]

    assert ordered == ["T-1004", "T-1002", "T-1001", "T-1003", "T-1005"]


def test_filter_combines_visibility_search_and_order():
    tickets = [
        make_ticket("T-1001", title="Error en CRM", priority=20),
        make_ticket("T-1002", title="Error en portal", priority=80),
        make_ticket("T-1003", title="Error ajeno", user_id="exec-2", priority=99),
    ]

    result = ticketing.filter_tickets(tickets, EXECUTIVE, "error")

    assert [t["id"] for t in result] == ["T-1002", "T-1001"]


def test_group_by_status_keeps_every_column():
    tickets = [
        make_ticket("T-1001", status="Enviado"),
        make_ticket("T-1002", status="Resuelto"),
        make_ticket("T-1003", status="Enviado"),
    ]

    columns = ticketing.group_by_status(tickets)

    assert [c["status"] for c in columns] == ticketing.STATUSES
    counts = {c["status"]: len(c["tickets"]) for c in columns}
    assert counts == {"Enviado": 2, "Revisión": 0, "Aprobado": 0, "En proceso": 0, "Resuelto": 1}


def test_dashboard_stats():
    tickets = [
        make_ticket("T-1001", type="Error", status="Resuelto"),
        make_ticket("T-1002", type="Error"),
        make_ticket("T-1003", type="Mejora", status="Aprobado"),
    ]

    assert ticketing.dashboard_stats(tickets) == {"total": 3, "pending": 2, "resolved": 1, "critical": 2}
    assert ticketing.dashboard_stats([]) == {"total": 0, "pending": 0, "resolved": 0, "critical": 0}


def test_parse_timestamp_accepts_iso_and_datetimes():
    aware = ticketing.parse_timestamp("2026-04-05T08:30:00Z")
    naive = ticketing.parse_timestamp(datetime(2026, 4, 5, 8, 30))

    assert aware == datetime(2026, 4, 5, 8, 30, tzinfo=timezone.utc)
    assert naive == aware


@pytest.mark.parametrize("value", ["05/04/2026", "", None, 1712300000])
def test_parse_timestamp_rejects_other_formats(value):
    with pytest.raises(ValueError):
        ticketing.parse_timestamp(value)
