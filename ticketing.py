from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Mapping, Optional

# --------------------------------------------------------------------------------------
# Vocabulary
# --------------------------------------------------------------------------------------
TYPE_HELP = "Ayuda"
TYPE_QUERY = "Consulta"
TYPE_ERROR = "Error"
TYPE_REQUEST = "Solicitud"
TYPE_IMPROVEMENT = "Mejora"
TICKET_TYPES = [TYPE_HELP, TYPE_QUERY, TYPE_ERROR, TYPE_REQUEST, TYPE_IMPROVEMENT]

STATUS_SENT = "Enviado"
STATUS_REVIEW = "Revisión"
STATUS_APPROVED = "Aprobado"
STATUS_IN_PROGRESS = "En proceso"
STATUS_RESOLVED = "Resuelto"
STATUSES = [STATUS_SENT, STATUS_REVIEW, STATUS_APPROVED, STATUS_IN_PROGRESS, STATUS_RESOLVED]

AREA_COMMERCIAL = "Comercial"
AREA_MARKETING = "Marketing"
AREA_OPERATIONS = "Operativa"
AREA_SUPPORT = "Soporte"
AREA_CREDIT = "Crediticia"
AREAS = [AREA_COMMERCIAL, AREA_MARKETING, AREA_OPERATIONS, AREA_SUPPORT, AREA_CREDIT]

ROLE_EXECUTIVE = "Ejecutivo"
ROLE_ADMIN = "Administrador"
ROLES = [ROLE_EXECUTIVE, ROLE_ADMIN]

PRIORITY_MIN = 0
PRIORITY_MAX = 100
DEFAULT_PRIORITY = 50

KANBAN_COLUMNS = [
    {"status": STATUS_SENT, "title": "Enviado", "color": "var(--status-info)"},
    {"status": STATUS_REVIEW, "title": "Revisión", "color": "var(--status-warning)"},
    {"status": STATUS_APPROVED, "title": "Aprobado", "color": "var(--status-success)"},
    {"status": STATUS_IN_PROGRESS, "title": "En proceso", "color": "var(--brand-primary)"},
    {"status": STATUS_RESOLVED, "title": "Resuelto", "color": "var(--status-neutral)"},
]

VIEW_DASHBOARD = "dashboard"
VIEW_KANBAN = "kanban"
VIEW_CREATE = "create"
VIEW_ANALYTICS = "analytics"
VIEW_USERS = "users"

_VIEWS_BY_ROLE = {
    ROLE_EXECUTIVE: (VIEW_DASHBOARD, VIEW_KANBAN, VIEW_CREATE),
    ROLE_ADMIN: (VIEW_DASHBOARD, VIEW_KANBAN, VIEW_ANALYTICS, VIEW_USERS),
}


# --------------------------------------------------------------------------------------
# Roles & views
# --------------------------------------------------------------------------------------


def is_admin(user: Optional[Mapping]) -> bool:
    return bool(user) and user.get("role") == ROLE_ADMIN


def permitted_views(role: Optional[str]) -> tuple[str, ...]:
    """Return the views a role may open, in navigation order."""

    return _VIEWS_BY_ROLE.get(role or "", ())


def can_access(role: Optional[str], view: str) -> bool:
    return view in permitted_views(role)


def can_move_tickets(user: Optional[Mapping]) -> bool:
    return is_admin(user)


# --------------------------------------------------------------------------------------
# Filtering, search & ordering
# --------------------------------------------------------------------------------------


def validate_priority(value) -> int:
    """Coerce a submitted priority and enforce the 0-100 range."""

    try:
        priority = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ValueError("La prioridad debe ser un número entero.") from exc
    if priority < PRIORITY_MIN or priority > PRIORITY_MAX:
        raise ValueError(f"La prioridad debe estar entre {PRIORITY_MIN} y {PRIORITY_MAX}.")
    return priority


def visible_tickets(tickets: Iterable[dict], user: Optional[Mapping]) -> list[dict]:
    if is_admin(user):
        return list(tickets)
    user_id = (user or {}).get("id")
    if not user_id:
        return []
    return [ticket for ticket in tickets if ticket.get("user_id") == user_id]


def matches_query(ticket: Mapping, needle: str) -> bool:
    fields = (ticket.get("id"), ticket.get("title"), ticket.get("area"), ticket.get("user_name"))
    return any(needle in (value or "").lower() for value in fields)


def search_tickets(tickets: Iterable[dict], query: Optional[str]) -> list[dict]:
    needle = (query or "").strip().lower()
    if not needle:
        return list(tickets)
    return [ticket for ticket in tickets if matches_query(ticket, needle)]


def sort_by_priority(tickets: Iterable[dict]) -> list[dict]:
    """Highest priority first; newer tickets win ties, then the lower id."""

    ordered = sorted(tickets, key=lambda t: t.get("id") or "")
    ordered.sort(key=lambda t: _sort_timestamp(t.get("created_at")), reverse=True)
    ordered.sort(key=lambda t: t.get("priority") or 0, reverse=True)
    return ordered


def filter_tickets(
    tickets: Iterable[dict],
    user: Optional[Mapping],
    query: Optional[str] = None,
) -> list[dict]:
    return sort_by_priority(search_tickets(visible_tickets(tickets, user), query))


def _sort_timestamp(value) -> float:
    try:
        return parse_timestamp(value).timestamp()
    except ValueError:
        return 0.0


# --------------------------------------------------------------------------------------
# Kanban & dashboard
# --------------------------------------------------------------------------------------


def group_by_status(tickets: Iterable[dict]) -> list[dict]:
    tickets = list(tickets)
    columns = []
    for column in KANBAN_COLUMNS:
        columns.append(
            {
                **column,
                "tickets": [t for t in tickets if t.get("status") == column["status"]],
            }
        )
    return columns


def dashboard_stats(tickets: Iterable[dict]) -> dict[str, int]:
    tickets = list(tickets)
    resolved = sum(1 for t in tickets if t.get("status") == STATUS_RESOLVED)
    return {
        "total": len(tickets),
        "pending": len(tickets) - resolved,
        "resolved": resolved,
        "critical": sum(1 for t in tickets if t.get("type") == TYPE_ERROR),
    }


# --------------------------------------------------------------------------------------
# Analytics
# --------------------------------------------------------------------------------------


def parse_timestamp(value) -> datetime:
    """Parse a stored timestamp. Only datetimes and ISO-8601 strings are accepted."""

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"Unsupported timestamp format: {value!r}") from exc
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def semester_of(month: int) -> int:
    return 1 if month <= 6 else 2


def quarter_of(month: int) -> int:
    return math.ceil(month / 3)


def _period_value(raw) -> Optional[int]:
    text = str(raw if raw is not None else "").strip().lower()
    if not text or text == "all":
        return None
    try:
        return int(text)
    except ValueError:
        return None


@dataclass(frozen=True)
class PeriodFilter:
    year: Optional[int] = None
    semester: Optional[int] = None
    quarter: Optional[int] = None
    month: Optional[int] = None

    @classmethod
    def from_args(cls, args: Mapping) -> "PeriodFilter":
        return cls(
            year=_period_value(args.get("year")),
            semester=_period_value(args.get("semester")),
            quarter=_period_value(args.get("quarter")),
            month=_period_value(args.get("month")),
        )

    def matches(self, moment: datetime) -> bool:
        month = moment.month
        if self.year is not None and moment.year != self.year:
            return False
        if self.semester is not None and semester_of(month) != self.semester:
            return False
        if self.quarter is not None and quarter_of(month) != self.quarter:
            return False
        if self.month is not None and month != self.month:
            return False
        return True


def filter_by_period(tickets: Iterable[dict], period: PeriodFilter) -> list[dict]:
    return [t for t in tickets if period.matches(parse_timestamp(t.get("created_at")))]


def available_years(tickets: Iterable[dict]) -> list[int]:
    years = {parse_timestamp(t.get("created_at")).year for t in tickets}
    return sorted(years, reverse=True)


def errors_by_area(tickets: Iterable[dict]) -> list[tuple[str, int]]:
    counts: dict[str, int] = {area: 0 for area in AREAS}
    for ticket in tickets:
        if ticket.get("type") != TYPE_ERROR:
            continue
        area = ticket.get("area") or ""
        counts[area] = counts.get(area, 0) + 1
    return sorted(counts.items(), key=lambda item: item[1], reverse=True)


def _type_rank(ticket_type: str) -> int:
    try:
        return TICKET_TYPES.index(ticket_type)
    except ValueError:
        return len(TICKET_TYPES)


def top_type_by_area(tickets: Iterable[dict]) -> list[dict]:
    matrix: dict[str, Counter] = {}
    for ticket in tickets:
        area = ticket.get("area") or ""
        matrix.setdefault(area, Counter())[ticket.get("type") or ""] += 1

    results = []
    for area, counter in matrix.items():
        ticket_type, count = min(counter.items(), key=lambda item: (-item[1], _type_rank(item[0])))
        results.append({"area": area, "type": ticket_type, "count": count})
    results.sort(key=lambda item: item["count"], reverse=True)
    return results


def resolution_rate(tickets: Iterable[dict]) -> str:
    tickets = list(tickets)
    if not tickets:
        return "0.0"
    resolved = sum(1 for t in tickets if t.get("status") == STATUS_RESOLVED)
    return f"{resolved / len(tickets) * 100:.1f}"


def build_analytics(tickets: Iterable[dict], period: PeriodFilter) -> dict:
    """Aggregate the analytics report for the tickets created inside ``period``."""

    tickets = list(tickets)
    selected = filter_by_period(tickets, period)
    error_counts = errors_by_area(selected)
    top_error_area = error_counts[0] if error_counts and error_counts[0][1] > 0 else None
    return {
        "total": len(selected),
        "resolved": sum(1 for t in selected if t.get("status") == STATUS_RESOLVED),
        "resolution_rate": resolution_rate(selected),
        "errors_by_area": error_counts,
        "error_total": sum(count for _, count in error_counts),
        "top_types": top_type_by_area(selected),
        "top_error_area": top_error_area,
        "years": available_years(tickets),
    }
