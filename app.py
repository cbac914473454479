from __future__ import annotations
import os
import random
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import click
from flask import (
    Flask,
    abort,
    flash,
    jsonify,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from jinja2 import DictLoader
from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    func,
    text as sql_text,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import (
    Session,
    declarative_base,
    joinedload,
    relationship,
    scoped_session,
    sessionmaker,
)

from gemini import (
    GEMINI_API_KEY,
    GeminiServiceError,
    analyze_ticket_description,
    generate_smart_response,
)
from supabase_client import SupabaseError, sign_in_with_password, sign_out, sign_up
from ticketing import (
    AREAS,
    DEFAULT_PRIORITY,
    PRIORITY_MAX,
    PRIORITY_MIN,
    ROLE_ADMIN,
    ROLE_EXECUTIVE,
    ROLES,
    STATUS_SENT,
    STATUSES,
    TICKET_TYPES,
    TYPE_ERROR,
    TYPE_IMPROVEMENT,
    VIEW_ANALYTICS,
    VIEW_CREATE,
    VIEW_DASHBOARD,
    VIEW_KANBAN,
    VIEW_USERS,
    PeriodFilter,
    build_analytics,
    can_access,
    can_move_tickets,
    dashboard_stats,
    filter_tickets,
    group_by_status,
    is_admin,
    parse_timestamp,
    permitted_views,
    search_tickets,
    sort_by_priority,
    validate_priority,
    visible_tickets,
)
from uploads import (
    STORAGE_BUCKET,
    PendingFile,
    UploadError,
    delete_file,
    upload_files,
    verify_bucket,
    verify_upload,
)

# --------------------------------------------------------------------------------------
# Flask app config
# --------------------------------------------------------------------------------------
app = Flask(__name__)
app.config["SECRET_KEY"] = os.environ.get("FLASK_SECRET", "dev-secret")
app.config["MAX_CONTENT_LENGTH"] = 50 * 1024 * 1024  # videos included


def _candidate_path_from_env(value: str) -> Path | None:
    """Return a filesystem path for supported SQLite URI formats."""

    cleaned = value.strip()
    if not cleaned or cleaned == ":memory:":
        return None

    if cleaned.startswith("sqlite:///"):
        cleaned = cleaned[len("sqlite:///"):]
    elif cleaned.startswith("sqlite://"):
        cleaned = cleaned[len("sqlite://"):]

    if cleaned == ":memory:":
        return None

    if cleaned.startswith("file:") or "://" in cleaned:
        return None

    if "?" in cleaned:
        cleaned = cleaned.split("?", 1)[0]

    return Path(cleaned)


def _resolve_db_path(
    env_override: str | None = None,
    data_dir_override: str | None = None,
) -> str:
    """Determine the local SQLite database location and ensure the directory exists."""

    env_value = env_override if env_override is not None else os.environ.get("TICKETS_DB")
    data_dir = data_dir_override if data_dir_override is not None else os.environ.get("DATA_DIR")
    base_dir = Path(data_dir) if data_dir else Path(app.instance_path)

    if env_value:
        candidate = _candidate_path_from_env(env_value)
        if candidate is None:
            return env_value
        candidate = candidate.expanduser()
    else:
        candidate = Path("tickets.db")

    if not candidate.is_absolute():
        base_dir.mkdir(parents=True, exist_ok=True)
        candidate = (base_dir / candidate).resolve()

    candidate.parent.mkdir(parents=True, exist_ok=True)
    return str(candidate)


def _database_url() -> str:
    configured = os.getenv("DATABASE_URL")
    if configured:
        return configured
    return f"sqlite:///{_resolve_db_path()}"


def _create_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True, connect_args={"sslmode": "require"})


DATABASE_URL = _database_url()
engine = _create_engine(DATABASE_URL)
app.logger.info("DB engine: %s", "SQLite" if DATABASE_URL.startswith("sqlite") else "Postgres")

SessionLocal = scoped_session(
    sessionmaker(bind=engine, autoflush=False, autocommit=False)
)
Base = declarative_base()


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)
    role = Column(String, nullable=False, default=ROLE_EXECUTIVE)
    area = Column(String)
    avatar = Column(String)
    created_at = Column(DateTime(timezone=True), nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    user_name = Column(String)
    title = Column(String, nullable=False)
    type = Column(String, nullable=False)
    area = Column(String, nullable=False)
    status = Column(String, nullable=False, default=STATUS_SENT, index=True)
    description = Column(Text, nullable=False)
    priority = Column(Integer, nullable=False, default=DEFAULT_PRIORITY)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    attachments = relationship(
        "Attachment",
        back_populates="ticket",
        lazy="select",
        cascade="all, delete-orphan",
    )
    messages = relationship(
        "Message",
        back_populates="ticket",
        lazy="select",
        cascade="all, delete-orphan",
    )


class Message(Base):
    __tablename__ = "messages"

    id = Column(String, primary_key=True)
    ticket_id = Column(String, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    author = Column(String, nullable=False)
    role = Column(String, nullable=False)
    text = Column(Text, nullable=False, default="")
    timestamp = Column(DateTime(timezone=True), nullable=False)

    ticket = relationship("Ticket", back_populates="messages", lazy="select")
    attachments = relationship("Attachment", back_populates="message", lazy="select")


class Attachment(Base):
    __tablename__ = "attachments"

    id = Column(String, primary_key=True)
    ticket_id = Column(String, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    message_id = Column(String, ForeignKey("messages.id", ondelete="CASCADE"))
    name = Column(String, nullable=False)
    type = Column(String)
    url = Column(String, nullable=False)
    size = Column(String)
    path = Column(String)
    created_at = Column(DateTime(timezone=True), nullable=False)

    ticket = relationship("Ticket", back_populates="attachments", lazy="select")
    message = relationship("Message", back_populates="attachments", lazy="select")


def _load_allowed_domains() -> set[str]:
    raw = os.getenv("ALLOWED_EMAIL_DOMAINS", "gmail.com,capitalinteligente.cl")
    return {item.strip().lower().lstrip("@") for item in raw.split(",") if item.strip()}


ALLOWED_EMAIL_DOMAINS = _load_allowed_domains()
PROFILE_FETCH_TIMEOUT = 5.0
RECENT_TICKETS_LIMIT = 5

# --------------------------------------------------------------------------------------
# DB helpers
# --------------------------------------------------------------------------------------


def get_session():
    return SessionLocal()


def close_session():
    SessionLocal.remove()


@app.teardown_appcontext
def _teardown_sqlalchemy(exc: BaseException | None):  # noqa: ARG001
    close_session()


def configure_database(url: str) -> None:
    """Point the session factory at another database URL."""

    global engine, DATABASE_URL
    SessionLocal.remove()
    engine.dispose()
    DATABASE_URL = url
    engine = _create_engine(url)
    SessionLocal.configure(bind=engine)


def init_db():
    Base.metadata.create_all(engine)


# --------------------------------------------------------------------------------------
# Auth helpers
# --------------------------------------------------------------------------------------


def login_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        if not session.get("user"):
            return redirect(url_for("home"))
        return view_func(*args, **kwargs)
    return wrapper


def view_required(view: str):
    def decorator(view_func):
        @wraps(view_func)
        def wrapper(*args, **kwargs):
            if not can_access(current_role(), view):
                abort(403)
            return view_func(*args, **kwargs)
        return wrapper
    return decorator


def current_user() -> Optional[dict]:
    return session.get("user") or None


def current_role() -> Optional[str]:
    return (current_user() or {}).get("role")


def is_admin_user() -> bool:
    return is_admin(current_user())


def is_allowed_email(email: str) -> bool:
    if not email or email.count("@") != 1:
        return False
    local, domain = email.rsplit("@", 1)
    return bool(local) and domain.lower() in ALLOWED_EMAIL_DOMAINS


def domain_error_message() -> str:
    domains = " o ".join(f"@{d}" for d in sorted(ALLOWED_EMAIL_DOMAINS))
    return f"Solo se permiten correos {domains}"


_profile_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="profile-fetch")


def _load_profile(user_id: str) -> Optional[dict]:
    with Session(engine) as db:
        if engine.dialect.name == "postgresql":
            # bounds the query on the server, not just the wait
            db.execute(sql_text(f"SET LOCAL statement_timeout = {int(PROFILE_FETCH_TIMEOUT * 1000)}"))
        profile = db.get(Profile, user_id)
        return serialize_profile(profile) if profile else None


def fetch_profile(user_id: str, timeout: float | None = None) -> Optional[dict]:
    """Load the profile row, giving up after ``timeout`` seconds."""

    future = _profile_pool.submit(_load_profile, user_id)
    return future.result(timeout=timeout if timeout is not None else PROFILE_FETCH_TIMEOUT)


def _revoke_backend_session(access_token: Optional[str]) -> None:
    if not access_token:
        return
    try:
        sign_out(access_token)
    except SupabaseError as exc:
        app.logger.warning("Supabase sign-out failed: %s", exc)


# --------------------------------------------------------------------------------------
# Constants / helpers
# --------------------------------------------------------------------------------------
STATUS_BADGES = {
    "Enviado": {"cls": "badge-chip status-sent", "icon": "bi bi-send"},
    "Revisión": {"cls": "badge-chip status-review", "icon": "bi bi-eye"},
    "Aprobado": {"cls": "badge-chip status-approved", "icon": "bi bi-hand-thumbs-up"},
    "En proceso": {"cls": "badge-chip status-progress", "icon": "bi bi-arrow-repeat"},
    "Resuelto": {"cls": "badge-chip status-resolved", "icon": "bi bi-check2-all"},
}
NAV_ITEMS = {
    VIEW_DASHBOARD: {"endpoint": "dashboard", "icon": "bi bi-speedometer2", "label": "Dashboard"},
    VIEW_KANBAN: {"endpoint": "kanban", "icon": "bi bi-kanban", "label": "Tablero Kanban"},
    VIEW_CREATE: {"endpoint": "new_ticket", "icon": "bi bi-plus-circle", "label": "Nuevo Ticket"},
    VIEW_ANALYTICS: {"endpoint": "analytics", "icon": "bi bi-bar-chart", "label": "Analítica"},
    VIEW_USERS: {"endpoint": "user_access", "icon": "bi bi-shield-lock", "label": "Accesos"},
}
MONTH_NAMES = [
    "Enero", "Febrero", "Marzo", "Abril", "Mayo", "Junio",
    "Julio", "Agosto", "Septiembre", "Octubre", "Noviembre", "Diciembre",
]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def generate_ticket_code(db: Session) -> str:
    for _ in range(50):
        code = f"T-{random.randint(1000, 9999)}"
        if db.get(Ticket, code) is None:
            return code
    return f"T-{uuid.uuid4().hex[:6].upper()}"


def avatar_url(email: str) -> str:
    return f"https://picsum.photos/seed/{quote(email)}/100/100"


def format_timestamp(value) -> str:
    if not value:
        return "—"
    try:
        return parse_timestamp(value).strftime("%d/%m/%Y %H:%M UTC")
    except ValueError:
        return str(value)


def type_badge(ticket_type: str) -> str:
    if ticket_type == TYPE_ERROR:
        return "badge-danger"
    if ticket_type == TYPE_IMPROVEMENT:
        return "badge-success"
    return "badge-info"


def serialize_profile(profile: Profile) -> dict:
    return {
        "id": profile.id,
        "name": profile.name,
        "email": profile.email,
        "role": profile.role,
        "area": profile.area if profile.role == ROLE_EXECUTIVE else None,
        "avatar": profile.avatar or avatar_url(profile.email),
    }


def serialize_attachment(attachment: Attachment) -> dict:
    return {
        "id": attachment.id,
        "name": attachment.name,
        "type": attachment.type or "application/octet-stream",
        "url": attachment.url,
        "size": attachment.size or "",
    }


def _ordering_ts(value) -> float:
    try:
        return parse_timestamp(value).timestamp()
    except ValueError:
        return 0.0


def serialize_ticket(ticket: Ticket) -> dict:
    attachments = [
        serialize_attachment(att)
        for att in sorted(ticket.attachments, key=lambda a: (_ordering_ts(a.created_at), a.id))
        if att.message_id is None
    ]
    messages = [
        {
            "id": msg.id,
            "author": msg.author,
            "role": msg.role,
            "text": msg.text,
            "timestamp": msg.timestamp,
            "attachments": [serialize_attachment(att) for att in msg.attachments],
        }
        for msg in sorted(ticket.messages, key=lambda m: (_ordering_ts(m.timestamp), m.id))
    ]
    return {
        "id": ticket.id,
        "user_id": ticket.user_id,
        "user_name": ticket.user_name,
        "title": ticket.title,
        "type": ticket.type,
        "area": ticket.area,
        "status": ticket.status,
        "description": ticket.description,
        "priority": ticket.priority if ticket.priority is not None else DEFAULT_PRIORITY,
        "attachments": attachments,
        "messages": messages,
        "created_at": ticket.created_at,
        "updated_at": ticket.updated_at,
    }


def load_tickets() -> list[dict]:
    db = get_session()
    rows = (
        db.query(Ticket)
        .options(
            joinedload(Ticket.attachments),
            joinedload(Ticket.messages).joinedload(Message.attachments),
        )
        .order_by(Ticket.created_at.desc(), Ticket.id)
        .all()
    )
    return [serialize_ticket(row) for row in rows]


def can_view_ticket(user: Optional[dict], ticket: Ticket) -> bool:
    return is_admin(user) or ticket.user_id == (user or {}).get("id")


def collect_uploads(files) -> list[PendingFile]:
    pending: list[PendingFile] = []
    for upload in files:
        if not upload or not upload.filename:
            continue
        data = upload.read()
        if not data:
            continue
        pending.append(
            PendingFile(
                name=upload.filename,
                content_type=upload.mimetype or "application/octet-stream",
                data=data,
            )
        )
    return pending


def _discard_uploads(uploaded) -> None:
    for item in uploaded:
        try:
            delete_file(item.path)
        except SupabaseError as exc:
            app.logger.warning("Could not remove orphaned upload %s: %s", item.path, exc)


@app.context_processor
def inject_navigation():
    user = current_user()
    views = permitted_views((user or {}).get("role"))
    return {
        "current_user": user,
        "nav_items": [NAV_ITEMS[view] for view in views],
        "format_ts": format_timestamp,
        "type_badge": type_badge,
        "status_badges": STATUS_BADGES,
    }

# --------------------------------------------------------------------------------------
# Templates (kept inline for single-file simplicity)
# --------------------------------------------------------------------------------------
BASE_HTML = """
<!doctype html>
<html lang="es">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>Capital Inteligente · Mesa de Ayuda</title>
  <link href="https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/css/bootstrap.min.css" rel="stylesheet">
  <link href="https://cdn.jsdelivr.net/npm/bootstrap-icons@1.11.3/font/bootstrap-icons.css" rel="stylesheet">
  <link href="https://fonts.googleapis.com/css2?family=Outfit:wght@400;500;600;700&display=swap" rel="stylesheet">
  <style>
    :root {
      --brand-primary: #1F3C88;
      --brand-dark: #12172A;
      --brand-accent: #2FBF8F;
      --status-info: #4F70C4;
      --status-warning: #E8A33D;
      --status-success: #2FBF8F;
      --status-neutral: #7A8194;
      --status-danger: #D9534F;
      --surface: #ffffff;
      --shadow: 0 18px 35px rgba(18, 23, 42, 0.08);
    }

    * { box-sizing: border-box; }

    html, body {
      min-height: 100%;
      background: radial-gradient(circle at top, rgba(31,60,136,.10), transparent 55%), #F4F6FB;
      color: var(--brand-dark);
      font-family: "Outfit", "Segoe UI", "Helvetica Neue", Arial, sans-serif;
    }

    a { color: var(--brand-primary); text-decoration: none; }

    .app-header {
      background: linear-gradient(135deg, var(--brand-dark), #1b2240);
      color: #fff;
      padding: 0.85rem 1.5rem;
      display: flex;
      align-items: center;
      justify-content: space-between;
      gap: 1rem;
      border-bottom: 4px solid var(--brand-primary);
      position: sticky;
      top: 0;
      z-index: 1020;
    }

    .app-shell { display: flex; min-height: calc(100vh - 72px); }

    .app-sidebar {
      width: 240px;
      background: rgba(18, 23, 42, 0.94);
      color: rgba(255, 255, 255, 0.82);
      padding: 1.5rem 1.25rem;
      display: flex;
      flex-direction: column;
      gap: 0.35rem;
    }

    .nav-pill {
      display: flex;
      align-items: center;
      gap: 0.65rem;
      padding: 0.65rem 0.85rem;
      border-radius: 12px;
      color: inherit;
    }

    .nav-pill:hover { background: rgba(79, 112, 196, 0.18); color: #fff; }
    .nav-pill.active { background: var(--brand-primary); color: #fff; }

    .app-content {
      flex: 1;
      padding: 2rem clamp(1.25rem, 1.5vw + 1rem, 2.75rem);
      display: flex;
      flex-direction: column;
      gap: 1.5rem;
      min-width: 0;
    }

    .surface-card {
      background: var(--surface);
      border-radius: 18px;
      border: 1px solid rgba(18, 23, 42, 0.06);
      box-shadow: var(--shadow);
    }

    .stat-card { padding: 1.5rem; }
    .stat-kicker { font-size: 0.75rem; text-transform: uppercase; letter-spacing: 0.08em; color: var(--status-neutral); }
    .stat-value { font-size: 2rem; font-weight: 700; margin: 0; }

    .badge-chip {
      display: inline-flex;
      align-items: center;
      gap: 0.35rem;
      border-radius: 999px;
      padding: 0.3rem 0.75rem;
      font-size: 0.78rem;
      font-weight: 600;
    }
    .status-sent { background: rgba(79,112,196,.14); color: var(--status-info); }
    .status-review { background: rgba(232,163,61,.16); color: #a66b12; }
    .status-approved { background: rgba(47,191,143,.16); color: #1d8a66; }
    .status-progress { background: rgba(31,60,136,.14); color: var(--brand-primary); }
    .status-resolved { background: rgba(122,129,148,.16); color: var(--status-neutral); }
    .badge-danger { background: rgba(217,83,79,.14); color: var(--status-danger); }
    .badge-success { background: rgba(47,191,143,.16); color: #1d8a66; }
    .badge-info { background: rgba(79,112,196,.14); color: var(--status-info); }

    .priority-track { height: 6px; border-radius: 999px; background: #E6E9F2; overflow: hidden; }
    .priority-fill { height: 100%; background: var(--brand-primary); }
    .priority-fill.high { background: var(--status-danger); }

    .flash-message {
      background: rgba(31,60,136,.08);
      border-left: 4px solid var(--brand-primary);
      border-radius: 12px;
      padding: 0.85rem 1rem;
      white-space: pre-line;
    }

    .kanban-board { display: grid; grid-template-columns: repeat(5, minmax(220px, 1fr)); gap: 1rem; overflow-x: auto; }
    .kanban-column { background: rgba(255,255,255,.6); border-radius: 18px; padding: 1rem; min-height: 420px; }
    .kanban-card { background: var(--surface); border-radius: 14px; padding: 0.9rem; box-shadow: var(--shadow); margin-bottom: 0.75rem; cursor: pointer; }
    .kanban-card[draggable="true"] { cursor: grab; }

    .chat-bubble { border-radius: 14px; padding: 0.75rem 1rem; max-width: 80%; }
    .chat-bubble.admin { background: var(--brand-dark); color: #fff; margin-left: auto; }
    .chat-bubble.executive { background: #EEF1F8; }
  </style>
</head>
<body>
{% if current_user %}
  <header class="app-header">
    <a class="d-flex align-items-center gap-2 text-white fw-semibold" href="{{ url_for('dashboard') }}">
      <i class="bi bi-stars"></i><span>Capital Inteligente · Mesa de Ayuda</span>
    </a>
    <form class="flex-grow-1" style="max-width: 420px;" method="get" action="{{ url_for('kanban' if request.endpoint == 'kanban' else 'dashboard') }}">
      <input class="form-control form-control-sm" type="search" name="q" value="{{ request.args.get('q', '') }}" placeholder="Buscar ticket, ID o usuario...">
    </form>
    <div class="d-flex align-items-center gap-3 small">
      <img src="{{ current_user['avatar'] }}" alt="" width="32" height="32" class="rounded-circle">
      <div class="text-white-50"><strong class="text-white">{{ current_user['name'] }}</strong> · {{ current_user['role'] }}</div>
      <a class="btn btn-outline-light btn-sm" href="{{ url_for('logout') }}">Salir</a>
    </div>
  </header>
  <div class="app-shell">
    <aside class="app-sidebar">
      {% for item in nav_items %}
      <a class="nav-pill {% if request.endpoint == item.endpoint %}active{% endif %}" href="{{ url_for(item.endpoint) }}"><i class="{{ item.icon }}"></i>{{ item.label }}</a>
      {% endfor %}
    </aside>
    <main class="app-content">
      {% with messages = get_flashed_messages() %}
        {% if messages %}
          <div class="flash-message">{{ messages|join('\n') }}</div>
        {% endif %}
      {% endwith %}
      {% block workspace_content %}{% endblock %}
    </main>
  </div>
{% else %}
  <main class="container py-5">
    {% with messages = get_flashed_messages() %}
      {% if messages %}
        <div class="flash-message mb-4">{{ messages|join('\n') }}</div>
      {% endif %}
    {% endwith %}
    {% block home_content %}{% endblock %}
  </main>
{% endif %}
<script src="https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/js/bootstrap.bundle.min.js"></script>
{% block scripts %}{% endblock %}
</body>
</html>
"""


AUTH_HTML = """
{% extends 'base.html' %}
{% block home_content %}
<div class="row justify-content-center">
  <div class="col-md-7 col-lg-5">
    <div class="surface-card p-4 p-md-5">
      <h1 class="fw-semibold h3 mb-1">{{ 'Iniciar Sesión' if mode == 'login' else 'Registrarse' }}</h1>
      <p class="text-secondary">{{ 'Ingresa tus credenciales para continuar.' if mode == 'login' else 'Crea tu cuenta corporativa.' }}</p>
      <form id="auth-form" method="post" action="{{ url_for('login' if mode == 'login' else 'signup') }}" class="d-flex flex-column gap-3">
        {% if mode == 'signup' %}
        <div>
          <label class="form-label text-uppercase small">Nombre completo</label>
          <input class="form-control" name="name" placeholder="Juan Pérez" required>
        </div>
        {% endif %}
        <div>
          <label class="form-label text-uppercase small">Correo</label>
          <input class="form-control" type="email" name="email" placeholder="ejemplo@capitalinteligente.cl" required>
        </div>
        <div>
          <label class="form-label text-uppercase small">Contraseña</label>
          <input class="form-control" type="password" name="password" minlength="6" required>
        </div>
        {% if mode == 'signup' %}
        <div class="row g-3">
          <div class="col-6">
            <label class="form-label text-uppercase small">Rol</label>
            <select class="form-select" name="role" id="signup-role">
              {% for r in roles %}<option value="{{ r }}">{{ r }}</option>{% endfor %}
            </select>
          </div>
          <div class="col-6">
            <label class="form-label text-uppercase small">Área</label>
            <select class="form-select" name="area" id="signup-area">
              {% for a in areas %}<option value="{{ a }}">{{ a }}</option>{% endfor %}
            </select>
          </div>
        </div>
        {% endif %}
        <button class="btn btn-primary" type="submit" id="auth-submit">{{ 'Iniciar Sesión' if mode == 'login' else 'Registrarse' }}</button>
      </form>
      <div class="text-center mt-3">
        {% if mode == 'login' %}
        <a href="{{ url_for('home', mode='signup') }}">¿No tienes cuenta? Regístrate aquí</a>
        {% else %}
        <a href="{{ url_for('home') }}">¿Ya tienes cuenta? Inicia sesión</a>
        {% endif %}
      </div>
    </div>
  </div>
</div>
{% endblock %}
{% block scripts %}
<script>
  const form = document.getElementById('auth-form');
  const submit = document.getElementById('auth-submit');
  const label = submit.textContent;
  form.addEventListener('submit', () => {
    submit.disabled = true;
    submit.textContent = 'Procesando...';
    setTimeout(() => { submit.disabled = false; submit.textContent = label; }, 3000);
  });
  const role = document.getElementById('signup-role');
  if (role) {
    const area = document.getElementById('signup-area');
    role.addEventListener('change', () => { area.disabled = role.value === '{{ admin_role }}'; });
  }
</script>
{% endblock %}
"""


DASHBOARD_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
<section class="d-flex flex-wrap align-items-center justify-content-between gap-3">
  <div>
    <h1 class="fw-semibold display-6 mb-1">Hola, {{ current_user['name'] }}</h1>
    <p class="text-secondary mb-0">{{ 'Vista global de todos los tickets.' if admin else 'Estos son tus tickets.' }}</p>
  </div>
  {% if can_create %}
  <a class="btn btn-primary d-flex align-items-center gap-2" href="{{ url_for('new_ticket') }}"><i class="bi bi-plus-lg"></i>Nuevo Ticket</a>
  {% endif %}
</section>

<div class="row g-3">
  <div class="col-6 col-xl-3">
    <div class="surface-card stat-card h-100">
      <div class="stat-kicker">Total</div>
      <p class="stat-value" data-stat="total">{{ stats.total }}</p>
    </div>
  </div>
  <div class="col-6 col-xl-3">
    <div class="surface-card stat-card h-100">
      <div class="stat-kicker">Pendientes</div>
      <p class="stat-value text-warning" data-stat="pending">{{ stats.pending }}</p>
    </div>
  </div>
  <div class="col-6 col-xl-3">
    <div class="surface-card stat-card h-100">
      <div class="stat-kicker">Resueltos</div>
      <p class="stat-value text-success" data-stat="resolved">{{ stats.resolved }}</p>
    </div>
  </div>
  <div class="col-6 col-xl-3">
    <div class="surface-card stat-card h-100">
      <div class="stat-kicker">Críticos</div>
      <p class="stat-value text-danger" data-stat="critical">{{ stats.critical }}</p>
    </div>
  </div>
</div>

<div class="surface-card p-0 overflow-hidden">
  <div class="d-flex align-items-center justify-content-between p-4 border-bottom">
    <h5 class="fw-semibold mb-0">{{ 'Resultados para "' ~ query ~ '"' if query else 'Tickets Recientes' }}</h5>
    <a class="d-flex align-items-center gap-1" href="{{ url_for('kanban') }}">Ver todos en Kanban <i class="bi bi-chevron-right"></i></a>
  </div>
  <div class="table-responsive p-3">
    <table class="table align-middle mb-0">
      <thead>
        <tr>
          <th scope="col">ID</th>
          <th scope="col">Ticket</th>
          <th scope="col">Tipo</th>
          <th scope="col">Área</th>
          <th scope="col">Prioridad</th>
          <th scope="col">Estado</th>
          <th scope="col"></th>
        </tr>
      </thead>
      <tbody>
        {% for t in tickets %}
        {% set status_style = status_badges.get(t['status'], status_badges['Enviado']) %}
        <tr data-ticket="{{ t['id'] }}">
          <td class="fw-semibold">{{ t['id'] }}</td>
          <td>
            <div class="fw-semibold">{{ t['title'] }}</div>
            <div class="text-secondary small">{{ t['user_name'] }} · {{ format_ts(t['created_at']) }}</div>
          </td>
          <td><span class="badge-chip {{ type_badge(t['type']) }}">{{ t['type'] }}</span></td>
          <td>{{ t['area'] }}</td>
          <td>{{ t['priority'] }}%</td>
          <td><span class="{{ status_style.cls }}"><i class="{{ status_style.icon }}"></i>{{ t['status'] }}</span></td>
          <td class="text-end"><a class="btn btn-sm btn-outline-dark" href="{{ url_for('ticket_detail', ticket_id=t['id']) }}">Ver</a></td>
        </tr>
        {% else %}
        <tr>
          <td colspan="7" class="text-center py-5 text-secondary">No hay tickets para mostrar.</td>
        </tr>
        {% endfor %}
      </tbody>
    </table>
  </div>
</div>
{% endblock %}
"""


KANBAN_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
<section>
  <h1 class="fw-semibold h3 mb-1">Tablero Kanban</h1>
  <p class="text-secondary mb-0">{{ 'Arrastra las tarjetas para cambiar su estado.' if draggable else 'Seguimiento del estado de tus tickets.' }}</p>
</section>
<div class="kanban-board">
  {% for column in columns %}
  <div class="kanban-column" data-status="{{ column.status }}" data-count="{{ column.tickets|length }}">
    <div class="d-flex align-items-center justify-content-between mb-3">
      <div class="d-flex align-items-center gap-2 fw-semibold">
        <span class="rounded-circle d-inline-block" style="width:10px;height:10px;background:{{ column.color }}"></span>{{ column.title }}
      </div>
      <span class="badge bg-light text-dark border">{{ column.tickets|length }}</span>
    </div>
    {% for t in column.tickets %}
    <div class="kanban-card" data-ticket-id="{{ t['id'] }}" {% if draggable %}draggable="true"{% endif %}
         onclick="window.location='{{ url_for('ticket_detail', ticket_id=t['id']) }}'">
      <div class="d-flex justify-content-between small text-secondary mb-1">
        <span>{{ t['id'] }}</span><span>Prioridad {{ t['priority'] }}%</span>
      </div>
      <div class="priority-track mb-2"><div class="priority-fill {% if t['priority'] >= 80 %}high{% endif %}" style="width: {{ t['priority'] }}%"></div></div>
      <div class="fw-semibold mb-2">{{ t['title'] }}</div>
      <div class="d-flex flex-wrap gap-1 mb-2">
        <span class="badge-chip badge-info">{{ t['area'] }}</span>
        <span class="badge-chip {{ type_badge(t['type']) }}">{{ t['type'] }}</span>
      </div>
      <div class="d-flex gap-3 small text-secondary">
        <span><i class="bi bi-clock"></i> {{ format_ts(t['updated_at'])[:10] }}</span>
        {% if t['attachments'] %}<span><i class="bi bi-paperclip"></i> {{ t['attachments']|length }}</span>{% endif %}
        {% if t['messages'] %}<span><i class="bi bi-chat"></i> {{ t['messages']|length }}</span>{% endif %}
      </div>
      <div class="small mt-2"><i class="bi bi-person"></i> {{ t['user_name'] }}</div>
    </div>
    {% else %}
    <div class="text-center text-secondary small py-4">Sin tickets</div>
    {% endfor %}
  </div>
  {% endfor %}
</div>
{% endblock %}
{% block scripts %}
{% if draggable %}
<script>
  const statusUrl = "{{ url_for('update_status', ticket_id='__ID__') }}";
  document.querySelectorAll('.kanban-card[draggable="true"]').forEach((card) => {
    card.addEventListener('dragstart', (e) => e.dataTransfer.setData('ticketId', card.dataset.ticketId));
  });
  document.querySelectorAll('.kanban-column').forEach((column) => {
    column.addEventListener('dragover', (e) => e.preventDefault());
    column.addEventListener('drop', async (e) => {
      e.preventDefault();
      const ticketId = e.dataTransfer.getData('ticketId');
      if (!ticketId) return;
      const resp = await fetch(statusUrl.replace('__ID__', encodeURIComponent(ticketId)), {
        method: 'POST',
        headers: { 'Content-Type': 'application/json' },
        body: JSON.stringify({ status: column.dataset.status }),
      });
      if (!resp.ok) {
        const data = await resp.json().catch(() => ({}));
        alert(data.error || 'No se pudo actualizar el estado.');
      }
      window.location.reload();
    });
  });
</script>
{% endif %}
{% endblock %}
"""


NEW_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
<section>
  <h1 class="fw-semibold h3 mb-1">Nueva Solicitud</h1>
  <p class="text-secondary mb-0">Describe el problema, cuándo ocurre y qué esperabas ver.</p>
</section>
<form class="surface-card p-4 d-flex flex-column gap-3" method="post" enctype="multipart/form-data" id="ticket-form">
  <div>
    <label class="form-label text-uppercase small">Título</label>
    <input class="form-control" name="title" placeholder="Ej. El cotizador no carga el descuento..." required>
  </div>
  <div class="row g-3">
    <div class="col-md-6">
      <label class="form-label text-uppercase small">Tipo</label>
      <select class="form-select" name="type" id="ticket-type">
        {% for v in types %}<option value="{{ v }}">{{ v }}</option>{% endfor %}
      </select>
    </div>
    <div class="col-md-6">
      <label class="form-label text-uppercase small">Área</label>
      <select class="form-select" name="area">
        {% for v in areas %}<option value="{{ v }}" {% if v == default_area %}selected{% endif %}>{{ v }}</option>{% endfor %}
      </select>
    </div>
  </div>
  <div>
    <label class="form-label text-uppercase small d-flex justify-content-between">
      <span>Prioridad</span><span id="priority-label">{{ default_priority }}%</span>
    </label>
    <input class="form-range" type="range" name="priority" id="priority" min="{{ priority_min }}" max="{{ priority_max }}" step="5" value="{{ default_priority }}">
  </div>
  <div>
    <label class="form-label text-uppercase small">Descripción Detallada</label>
    <textarea class="form-control" name="description" id="description" rows="4" required></textarea>
    {% if ai_enabled %}
    <button class="btn btn-sm btn-outline-primary mt-2" type="button" id="analyze"><i class="bi bi-stars"></i> Analizar con IA</button>
    <div class="small text-secondary mt-2" id="analysis"></div>
    {% endif %}
  </div>
  <div>
    <label class="form-label text-uppercase small">Adjuntos</label>
    <input class="form-control" type="file" name="attachments" multiple accept="image/*,video/*,.pdf,.doc,.docx">
  </div>
  <div class="d-flex justify-content-end gap-2">
    <a class="btn btn-link" href="{{ url_for('dashboard') }}">Cancelar</a>
    <button class="btn btn-primary" type="submit">Enviar Solicitud <i class="bi bi-chevron-right"></i></button>
  </div>
</form>
{% endblock %}
{% block scripts %}
<script>
  const priority = document.getElementById('priority');
  const priorityLabel = document.getElementById('priority-label');
  priority.addEventListener('input', () => { priorityLabel.textContent = priority.value + '%'; });
  const analyze = document.getElementById('analyze');
  if (analyze) {
    analyze.addEventListener('click', async () => {
      const box = document.getElementById('analysis');
      box.textContent = 'Analizando...';
      const resp = await fetch("{{ url_for('ai_analyze') }}", {
        method: 'POST',
        headers: { 'Content-Type': 'application/json' },
        body: JSON.stringify({ description: document.getElementById('description').value }),
      });
      const data = await resp.json().catch(() => ({}));
      if (!resp.ok) { box.textContent = data.error || 'No se pudo analizar la descripción.'; return; }
      const a = data.analysis;
      box.textContent = `${a.summary} · Categoría sugerida: ${a.suggestedCategory} · Prioridad: ${a.priority}`;
      const type = document.getElementById('ticket-type');
      if ([...type.options].some((o) => o.value === a.suggestedCategory)) type.value = a.suggestedCategory;
      if (a.suggestedPriorityValue !== null && a.suggestedPriorityValue !== undefined) {
        priority.value = a.suggestedPriorityValue;
        priorityLabel.textContent = priority.value + '%';
      }
    });
  }
</script>
{% endblock %}
"""


DETAIL_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
{% set status_style = status_badges.get(t['status'], status_badges['Enviado']) %}
<div class="d-flex flex-wrap align-items-start justify-content-between gap-3">
  <div>
    <span class="badge-chip badge-info"><i class="bi bi-ticket-detailed"></i> {{ t['id'] }}</span>
    <h2 class="fw-semibold mt-2 mb-2">{{ t['title'] }}</h2>
    <div class="d-flex flex-wrap gap-2 text-secondary small">
      <span><i class="bi bi-person-circle me-1"></i>{{ t['user_name'] }}</span>
      <span>· {{ t['area'] }}</span>
      <span>· Creado {{ format_ts(t['created_at']) }}</span>
    </div>
  </div>
  <div class="d-flex flex-wrap gap-2">
    <span class="{{ status_style.cls }}"><i class="{{ status_style.icon }}"></i>{{ t['status'] }}</span>
    <span class="badge-chip {{ type_badge(t['type']) }}">{{ t['type'] }}</span>
    <span class="badge-chip badge-info">Prioridad {{ t['priority'] }}%</span>
  </div>
</div>

<div class="row g-4">
  <div class="col-xl-8">
    <div class="surface-card p-4">
      <h5 class="fw-semibold mb-3">Descripción</h5>
      <p class="mb-0" style="white-space: pre-line;">{{ t['description'] }}</p>
    </div>

    <div class="surface-card p-4 mt-4">
      <h5 class="fw-semibold mb-3">Conversación</h5>
      <div class="d-flex flex-column gap-3" id="messages">
        {% for m in t['messages'] %}
        <div class="chat-bubble {{ 'admin' if m['role'] == admin_role else 'executive' }}">
          <div class="small fw-semibold">{{ m['author'] }} · {{ m['role'] }}</div>
          {% if m['text'] %}<div style="white-space: pre-line;">{{ m['text'] }}</div>{% endif %}
          {% for att in m['attachments'] %}
          <div class="small mt-1"><a href="{{ att['url'] }}" download="{{ att['name'] }}" target="_blank" rel="noopener"><i class="bi bi-paperclip"></i> {{ att['name'] }}</a> <span class="opacity-75">{{ att['size'] }}</span></div>
          {% endfor %}
          <div class="small opacity-75 mt-1">{{ format_ts(m['timestamp']) }}</div>
        </div>
        {% else %}
        <div class="text-secondary small">No hay mensajes aún.</div>
        {% endfor %}
      </div>
      <form class="mt-4" method="post" action="{{ url_for('add_message', ticket_id=t['id']) }}" enctype="multipart/form-data" id="message-form">
        <div class="d-flex gap-2">
          <input class="form-control" name="text" id="message-text" placeholder="Escribe un mensaje..." autocomplete="off">
          {% if admin %}
          <input class="d-none" type="file" name="attachments" id="message-files" multiple>
          <button class="btn btn-outline-dark" type="button" onclick="document.getElementById('message-files').click()"><i class="bi bi-paperclip"></i></button>
          {% endif %}
          <button class="btn btn-primary" type="submit"><i class="bi bi-send"></i></button>
        </div>
        {% if admin %}
        <button class="btn btn-sm btn-link px-0 mt-2" type="button" id="smart-reply"><i class="bi bi-stars"></i> Sugerir respuesta con IA</button>
        {% endif %}
      </form>
    </div>
  </div>

  <div class="col-xl-4">
    <div class="surface-card p-4 mb-4">
      <h5 class="fw-semibold mb-3">Adjuntos</h5>
      {% if t['attachments'] %}
      <ul class="list-unstyled d-flex flex-column gap-2 mb-0">
        {% for att in t['attachments'] %}
        <li class="d-flex justify-content-between align-items-center gap-2">
          <button class="btn btn-link p-0 text-start" type="button" data-bs-toggle="modal" data-bs-target="#preview-{{ att['id'] }}">
            <i class="bi {{ 'bi-image' if att['type'].startswith('image/') else ('bi-camera-video' if att['type'].startswith('video/') else 'bi-file-earmark') }}"></i>
            {{ att['name'] }}
          </button>
          <span class="text-secondary small">{{ att['size'] }}</span>
          <a href="{{ att['url'] }}" download="{{ att['name'] }}" title="Descargar"><i class="bi bi-download"></i></a>
        </li>
        {% endfor %}
      </ul>
      {% else %}
      <p class="text-secondary small mb-0">Este ticket no tiene adjuntos.</p>
      {% endif %}
    </div>
    {% if admin %}
    <div class="surface-card p-4">
      <h5 class="fw-semibold mb-3">Estado</h5>
      <form method="post" action="{{ url_for('update_status', ticket_id=t['id']) }}" class="d-flex gap-2">
        <select name="status" class="form-select">
          {% for s in statuses %}<option value="{{ s }}" {% if s == t['status'] %}selected{% endif %}>{{ s }}</option>{% endfor %}
        </select>
        <button class="btn btn-primary" type="submit"><i class="bi bi-arrow-repeat"></i></button>
      </form>
    </div>
    {% endif %}
  </div>
</div>

{% for att in t['attachments'] %}
<div class="modal fade" id="preview-{{ att['id'] }}" tabindex="-1">
  <div class="modal-dialog modal-xl modal-dialog-centered">
    <div class="modal-content bg-dark text-white">
      <div class="modal-header border-0">
        <h6 class="modal-title">{{ att['name'] }}</h6>
        <button type="button" class="btn-close btn-close-white" data-bs-dismiss="modal" aria-label="Cerrar"></button>
      </div>
      <div class="modal-body text-center">
        {% if att['type'].startswith('image/') %}
        <img src="{{ att['url'] }}" alt="{{ att['name'] }}" class="img-fluid">
        {% elif att['type'].startswith('video/') %}
        <video src="{{ att['url'] }}" controls class="w-100" onerror="this.hidden = true; this.nextElementSibling.hidden = false;"></video>
        <div hidden>No se puede reproducir este video en el navegador. <a class="link-light" href="{{ att['url'] }}" download="{{ att['name'] }}">Descargar</a></div>
        {% else %}
        <p>Vista previa no disponible.</p>
        {% endif %}
        <a class="btn btn-light mt-3" href="{{ att['url'] }}" download="{{ att['name'] }}"><i class="bi bi-download"></i> Descargar</a>
      </div>
    </div>
  </div>
</div>
{% endfor %}
{% endblock %}
{% block scripts %}
<script>
  const messageForm = document.getElementById('message-form');
  const messageText = document.getElementById('message-text');
  const messageFiles = document.getElementById('message-files');
  messageForm.addEventListener('submit', (e) => {
    const hasFiles = messageFiles && messageFiles.files.length > 0;
    if (!messageText.value.trim() && !hasFiles) e.preventDefault();
  });
  const smartReply = document.getElementById('smart-reply');
  if (smartReply) {
    smartReply.addEventListener('click', async () => {
      smartReply.disabled = true;
      const resp = await fetch("{{ url_for('smart_reply', ticket_id=t['id']) }}", {
        method: 'POST',
        headers: { 'Content-Type': 'application/json' },
        body: JSON.stringify({ query: messageText.value }),
      });
      const data = await resp.json().catch(() => ({}));
      smartReply.disabled = false;
      if (!resp.ok) { alert(data.error || 'Error al generar respuesta inteligente.'); return; }
      messageText.value = data.reply;
    });
  }
</script>
{% endblock %}
"""


ANALYTICS_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
<section>
  <h1 class="fw-semibold h3 mb-1">Analítica</h1>
  <p class="text-secondary mb-0">Errores y categorías por área de negocio.</p>
</section>
<form class="surface-card p-4 row g-3 align-items-end" method="get">
  <div class="col-6 col-md-3">
    <label class="form-label text-uppercase small">Año</label>
    <select class="form-select" name="year">
      <option value="all">Todos</option>
      {% for y in report.years %}<option value="{{ y }}" {% if period.year == y %}selected{% endif %}>{{ y }}</option>{% endfor %}
    </select>
  </div>
  <div class="col-6 col-md-2">
    <label class="form-label text-uppercase small">Semestre</label>
    <select class="form-select" name="semester">
      <option value="all">Todos</option>
      {% for s in (1, 2) %}<option value="{{ s }}" {% if period.semester == s %}selected{% endif %}>S{{ s }}</option>{% endfor %}
    </select>
  </div>
  <div class="col-6 col-md-2">
    <label class="form-label text-uppercase small">Trimestre</label>
    <select class="form-select" name="quarter">
      <option value="all">Todos</option>
      {% for q in (1, 2, 3, 4) %}<option value="{{ q }}" {% if period.quarter == q %}selected{% endif %}>Q{{ q }}</option>{% endfor %}
    </select>
  </div>
  <div class="col-6 col-md-3">
    <label class="form-label text-uppercase small">Mes</label>
    <select class="form-select" name="month">
      <option value="all">Todos</option>
      {% for name in months %}<option value="{{ loop.index }}" {% if period.month == loop.index %}selected{% endif %}>{{ name }}</option>{% endfor %}
    </select>
  </div>
  <div class="col-12 col-md-2 d-flex gap-2">
    <button class="btn btn-primary" type="submit"><i class="bi bi-funnel"></i></button>
    <a class="btn btn-link" href="{{ url_for('analytics') }}">Limpiar</a>
  </div>
</form>

<div class="row g-3">
  <div class="col-md-4">
    <div class="surface-card stat-card h-100">
      <div class="stat-kicker">Tickets</div>
      <p class="stat-value" data-stat="total">{{ report.total }}</p>
    </div>
  </div>
  <div class="col-md-4">
    <div class="surface-card stat-card h-100">
      <div class="stat-kicker">Errores</div>
      <p class="stat-value text-danger" data-stat="errors">{{ report.error_total }}</p>
    </div>
  </div>
  <div class="col-md-4">
    <div class="surface-card stat-card h-100">
      <div class="stat-kicker">Tasa de resolución</div>
      <p class="stat-value text-success" data-stat="resolution">{{ report.resolution_rate }}%</p>
    </div>
  </div>
</div>

<div class="row g-4">
  <div class="col-xl-6">
    <div class="surface-card p-4 h-100">
      <h5 class="fw-semibold mb-3">Errores por área</h5>
      {% set max_errors = report.errors_by_area[0][1] if report.errors_by_area else 0 %}
      {% for area, count in report.errors_by_area %}
      <div class="mb-3" data-area="{{ area }}" data-errors="{{ count }}">
        <div class="d-flex justify-content-between small"><span>{{ area }}</span><span>{{ count }}</span></div>
        <div class="priority-track"><div class="priority-fill high" style="width: {{ (count / max_errors * 100)|round(1) if max_errors else 0 }}%"></div></div>
      </div>
      {% endfor %}
    </div>
  </div>
  <div class="col-xl-6">
    <div class="surface-card p-4 h-100">
      <h5 class="fw-semibold mb-3">Categoría más frecuente por área</h5>
      <table class="table align-middle mb-0">
        <thead><tr><th>Área</th><th>Categoría</th><th class="text-end">Tickets</th></tr></thead>
        <tbody>
          {% for item in report.top_types %}
          <tr><td>{{ item.area }}</td><td><span class="badge-chip {{ type_badge(item.type) }}">{{ item.type }}</span></td><td class="text-end">{{ item.count }}</td></tr>
          {% else %}
          <tr><td colspan="3" class="text-secondary text-center py-4">Sin datos para el periodo.</td></tr>
          {% endfor %}
        </tbody>
      </table>
    </div>
  </div>
</div>

{% if report.top_error_area %}
<div class="surface-card p-4">
  <h5 class="fw-semibold mb-2"><i class="bi bi-lightbulb"></i> Insight</h5>
  <p class="mb-0">El área <strong>{{ report.top_error_area[0] }}</strong> concentra {{ report.top_error_area[1] }} errores en el periodo.
  Se sugiere una revisión de procesos técnicos en esta unidad para reducir la carga de soporte reactivo.</p>
</div>
{% endif %}
{% endblock %}
"""


USERS_HTML = """
{% extends 'base.html' %}
{% block workspace_content %}
<section class="d-flex flex-wrap align-items-center justify-content-between gap-3">
  <div>
    <h1 class="fw-semibold h3 mb-1">Gestión de Accesos</h1>
    <p class="text-secondary mb-0">Administra ejecutivos y administradores de la plataforma.</p>
  </div>
</section>
<form class="surface-card p-4 row g-3 align-items-end" method="post">
  <div class="col-md-3">
    <label class="form-label text-uppercase small">Nombre</label>
    <input class="form-control" name="name" placeholder="Ej. Juan Pérez" required>
  </div>
  <div class="col-md-3">
    <label class="form-label text-uppercase small">Correo</label>
    <input class="form-control" type="email" name="email" placeholder="ejemplo@capitalinteligente.cl" required>
  </div>
  <div class="col-md-2">
    <label class="form-label text-uppercase small">Rol</label>
    <select class="form-select" name="role">
      {% for r in roles %}<option value="{{ r }}">{{ r }}</option>{% endfor %}
    </select>
  </div>
  <div class="col-md-2">
    <label class="form-label text-uppercase small">Área</label>
    <select class="form-select" name="area">
      {% for a in areas %}<option value="{{ a }}">{{ a }}</option>{% endfor %}
    </select>
  </div>
  <div class="col-md-2">
    <button class="btn btn-primary w-100" type="submit"><i class="bi bi-person-plus"></i> Guardar</button>
  </div>
</form>
<div class="surface-card p-3">
  <table class="table align-middle mb-0">
    <thead><tr><th>Usuario</th><th>Correo</th><th>Rol</th><th>Área</th><th></th></tr></thead>
    <tbody>
      {% for u in users %}
      <tr data-user="{{ u['email'] }}">
        <td><img src="{{ u['avatar'] }}" alt="" width="28" height="28" class="rounded-circle me-2">{{ u['name'] }}</td>
        <td>{{ u['email'] }}</td>
        <td>{{ u['role'] }}</td>
        <td>{{ u['area'] or 'Acceso Total (TI)' }}</td>
        <td class="text-end">
          {% if u['id'] != current_user['id'] %}
          <form method="post" action="{{ url_for('delete_user', user_id=u['id']) }}" onsubmit="return confirm('¿Eliminar este usuario?');">
            <button class="btn btn-sm btn-outline-danger" type="submit"><i class="bi bi-trash"></i></button>
          </form>
          {% endif %}
        </td>
      </tr>
      {% else %}
      <tr><td colspan="5" class="text-center text-secondary py-4">No hay usuarios registrados.</td></tr>
      {% endfor %}
    </tbody>
  </table>
</div>
{% endblock %}
"""


# --------------------------------------------------------------------------------------
# Routes
# --------------------------------------------------------------------------------------


@app.route("/")
def home():
    if session.get("user"):
        return redirect(url_for("dashboard"))
    mode = "signup" if request.args.get("mode") == "signup" else "login"
    return render_template_string(
        AUTH_HTML,
        mode=mode,
        roles=ROLES,
        areas=AREAS,
        admin_role=ROLE_ADMIN,
    )


@app.route("/login", methods=["POST"])
def login():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    if not is_allowed_email(email):
        app.logger.warning("Sign-in rejected for domain of %s", email)
        flash(domain_error_message())
        return redirect(url_for("home"))

    try:
        auth_session = sign_in_with_password(email, password)
    except SupabaseError as exc:
        app.logger.warning("Sign-in failed for %s: %s", email, exc)
        flash(str(exc) or "Ocurrió un error inesperado")
        return redirect(url_for("home"))

    access_token = auth_session["access_token"]
    user_id = auth_session["user"]["id"]
    missing_message = "No se encontró un perfil para esta cuenta. Contacta a un administrador."
    try:
        profile = fetch_profile(user_id)
    except FutureTimeout:
        app.logger.warning(
            "Profile fetch for %s timed out after %ss; the query keeps a profile-fetch worker busy until it returns",
            user_id,
            PROFILE_FETCH_TIMEOUT,
        )
        profile = None
        missing_message = "No se pudo cargar tu perfil a tiempo. Intenta de nuevo."
    except SQLAlchemyError as exc:
        app.logger.error("Profile fetch for %s failed: %s", user_id, exc)
        profile = None
        missing_message = "No se pudo cargar tu perfil. Intenta de nuevo."

    session.clear()
    if not profile:
        _revoke_backend_session(access_token)
        flash(missing_message)
        return redirect(url_for("home"))

    session["access_token"] = access_token
    session["user"] = profile
    flash(f"Sesión iniciada como {profile['email']}")
    return redirect(url_for("dashboard"))


@app.route("/signup", methods=["POST"])
def signup():
    data = {k: (request.form.get(k) or "").strip() for k in ["name", "email", "role", "area"]}
    password = request.form.get("password") or ""
    email = data["email"].lower()
    back = url_for("home", mode="signup")

    if not is_allowed_email(email):
        flash(domain_error_message())
        return redirect(back)
    if not data["name"]:
        flash("El nombre es obligatorio.")
        return redirect(back)
    if len(password) < 6:
        flash("La contraseña debe tener al menos 6 caracteres.")
        return redirect(back)

    role = data["role"] if data["role"] in ROLES else ROLE_EXECUTIVE
    metadata = {"name": data["name"], "role": role}
    if role == ROLE_EXECUTIVE:
        if data["area"] not in AREAS:
            flash("Selecciona un área válida.")
            return redirect(back)
        metadata["area"] = data["area"]

    try:
        sign_up(email, password, metadata)
    except SupabaseError as exc:
        app.logger.warning("Sign-up failed for %s: %s", email, exc)
        flash(str(exc) or "Ocurrió un error inesperado")
        return redirect(back)

    flash("Registro exitoso. Revisa tu correo para confirmar (si está habilitado).")
    return redirect(url_for("home"))


@app.route("/logout")
def logout():
    _revoke_backend_session(session.get("access_token"))
    session.clear()
    flash("Sesión cerrada.")
    return redirect(url_for("home"))


@app.route("/dashboard")
@login_required
@view_required(VIEW_DASHBOARD)
def dashboard():
    user = current_user()
    query = (request.args.get("q") or "").strip()
    visible = visible_tickets(load_tickets(), user)
    results = sort_by_priority(search_tickets(visible, query))[:RECENT_TICKETS_LIMIT]
    return render_template_string(
        DASHBOARD_HTML,
        tickets=results,
        stats=dashboard_stats(visible),
        query=query,
        admin=is_admin(user),
        can_create=can_access(user["role"], VIEW_CREATE),
    )


@app.route("/kanban")
@login_required
@view_required(VIEW_KANBAN)
def kanban():
    user = current_user()
    tickets = filter_tickets(load_tickets(), user, request.args.get("q"))
    return render_template_string(
        KANBAN_HTML,
        columns=group_by_status(tickets),
        draggable=can_move_tickets(user),
    )


@app.route("/tickets/new", methods=["GET", "POST"])
@login_required
@view_required(VIEW_CREATE)
def new_ticket():
    user = current_user()
    if request.method == "POST":
        data = {k: (request.form.get(k) or "").strip() for k in [
            "title", "type", "area", "description", "priority"
        ]}

        if not data["title"] or not data["description"]:
            flash("El título y la descripción son obligatorios.")
            return redirect(url_for("new_ticket"))
        if data["type"] not in TICKET_TYPES or data["area"] not in AREAS:
            flash("Selecciona un tipo y un área válidos.")
            return redirect(url_for("new_ticket"))
        try:
            priority = validate_priority(data["priority"] or DEFAULT_PRIORITY)
        except ValueError as exc:
            flash(str(exc))
            return redirect(url_for("new_ticket"))

        try:
            uploaded = upload_files(
                collect_uploads(request.files.getlist("attachments")),
                access_token=session.get("access_token"),
            )
        except UploadError as exc:
            flash(str(exc))
            return redirect(url_for("new_ticket"))

        db = get_session()
        ts = now_utc()
        ticket = Ticket(
            id=generate_ticket_code(db),
            user_id=user["id"],
            user_name=user["name"],
            title=data["title"],
            type=data["type"],
            area=data["area"],
            status=STATUS_SENT,
            description=data["description"],
            priority=priority,
            created_at=ts,
            updated_at=ts,
        )
        for item in uploaded:
            ticket.attachments.append(
                Attachment(
                    id=item.id,
                    name=item.name,
                    type=item.type,
                    url=item.url,
                    size=item.size,
                    path=item.path,
                    created_at=ts,
                )
            )
        db.add(ticket)
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            app.logger.exception("Ticket insert failed")
            _discard_uploads(uploaded)
            flash(f"Error al crear el ticket: {exc}")
            return redirect(url_for("new_ticket"))

        app.logger.info("Ticket %s created by %s", ticket.id, user["email"])
        flash(f"Ticket {ticket.id} creado correctamente.")
        return redirect(url_for("kanban"))

    return render_template_string(
        NEW_HTML,
        types=TICKET_TYPES,
        areas=AREAS,
        default_area=user.get("area"),
        default_priority=DEFAULT_PRIORITY,
        priority_min=PRIORITY_MIN,
        priority_max=PRIORITY_MAX,
        ai_enabled=bool(GEMINI_API_KEY),
    )


@app.route("/ai/analyze", methods=["POST"])
@login_required
def ai_analyze():
    payload = request.get_json(silent=True) or {}
    description = (payload.get("description") or "").strip()
    if not description:
        return jsonify({"error": "La descripción es obligatoria."}), 400
    try:
        analysis = analyze_ticket_description(description)
    except GeminiServiceError as exc:
        app.logger.warning("Gemini analysis error: %s", exc)
        return jsonify({"error": "No se pudo analizar la descripción."}), 502
    return jsonify({"analysis": analysis})


@app.route("/tickets/<ticket_id>")
@login_required
def ticket_detail(ticket_id: str):
    user = current_user()
    db = get_session()
    ticket = (
        db.query(Ticket)
        .options(
            joinedload(Ticket.attachments),
            joinedload(Ticket.messages).joinedload(Message.attachments),
        )
        .filter(Ticket.id == ticket_id)
        .one_or_none()
    )
    if not ticket or not can_view_ticket(user, ticket):
        flash("Ticket no encontrado.")
        return redirect(url_for("dashboard"))
    return render_template_string(
        DETAIL_HTML,
        t=serialize_ticket(ticket),
        statuses=STATUSES,
        admin=is_admin(user),
        admin_role=ROLE_ADMIN,
    )


@app.route("/tickets/<ticket_id>/status", methods=["POST"])
@login_required
def update_status(ticket_id: str):
    if not is_admin_user():
        abort(403)
    wants_json = request.is_json
    if wants_json:
        new_status = ((request.get_json(silent=True) or {}).get("status") or "").strip()
    else:
        new_status = (request.form.get("status") or "").strip()

    def _fail(message: str, code: int):
        if wants_json:
            return jsonify({"error": message}), code
        flash(message)
        return redirect(url_for("kanban"))

    if new_status not in STATUSES:
        return _fail("Estado inválido.", 400)

    db = get_session()
    ticket = db.get(Ticket, ticket_id)
    if not ticket:
        return _fail("Ticket no encontrado.", 404)

    previous_status = ticket.status
    ticket.status = new_status
    ticket.updated_at = now_utc()
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        app.logger.exception("Status update for %s failed", ticket_id)
        return _fail(f"Error al actualizar el estado: {exc}", 500)

    app.logger.info("Ticket %s moved from %s to %s", ticket_id, previous_status, new_status)
    if wants_json:
        return jsonify({"id": ticket.id, "status": ticket.status})
    flash("Estado actualizado.")
    return redirect(url_for("ticket_detail", ticket_id=ticket_id))


@app.route("/tickets/<ticket_id>/messages", methods=["POST"])
@login_required
def add_message(ticket_id: str):
    user = current_user()
    admin = is_admin(user)
    text = (request.form.get("text") or "").strip()
    pending = collect_uploads(request.files.getlist("attachments")) if admin else []
    if not text and not pending:
        flash("El mensaje no puede estar vacío.")
        return redirect(url_for("ticket_detail", ticket_id=ticket_id))

    db = get_session()
    ticket = db.get(Ticket, ticket_id)
    if not ticket or not can_view_ticket(user, ticket):
        flash("Ticket no encontrado.")
        return redirect(url_for("dashboard"))

    try:
        uploaded = upload_files(pending, access_token=session.get("access_token"))
    except UploadError as exc:
        flash(str(exc))
        return redirect(url_for("ticket_detail", ticket_id=ticket_id))

    ts = now_utc()
    message = Message(
        id=uuid.uuid4().hex,
        author=user["name"],
        role=user["role"],
        text=text,
        timestamp=ts,
    )
    for item in uploaded:
        attachment = Attachment(
            id=item.id,
            name=item.name,
            type=item.type,
            url=item.url,
            size=item.size,
            path=item.path,
            created_at=ts,
        )
        message.attachments.append(attachment)
        ticket.attachments.append(attachment)
    ticket.messages.append(message)
    ticket.updated_at = ts
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        app.logger.exception("Message insert for %s failed", ticket_id)
        _discard_uploads(uploaded)
        flash(f"Error al enviar el mensaje: {exc}")
    return redirect(url_for("ticket_detail", ticket_id=ticket_id))


@app.route("/tickets/<ticket_id>/smart-reply", methods=["POST"])
@login_required
def smart_reply(ticket_id: str):
    if not is_admin_user():
        abort(403)
    payload = request.get_json(silent=True) or {}
    ticket = get_session().get(Ticket, ticket_id)
    if not ticket:
        return jsonify({"error": "Ticket no encontrado."}), 404
    query = (payload.get("query") or "").strip() or ticket.title
    try:
        reply = generate_smart_response(ticket.description, query)
    except GeminiServiceError as exc:
        app.logger.warning("Gemini response error: %s", exc)
        return jsonify({"error": "Error al generar respuesta inteligente."}), 502
    return jsonify({"reply": reply})


@app.route("/analytics")
@login_required
@view_required(VIEW_ANALYTICS)
def analytics():
    period = PeriodFilter.from_args(request.args)
    return render_template_string(
        ANALYTICS_HTML,
        report=build_analytics(load_tickets(), period),
        period=period,
        months=MONTH_NAMES,
    )


@app.route("/users", methods=["GET", "POST"])
@login_required
@view_required(VIEW_USERS)
def user_access():
    db = get_session()
    if request.method == "POST":
        data = {k: (request.form.get(k) or "").strip() for k in ["name", "email", "role", "area"]}
        email = data["email"].lower()
        if not data["name"] or not email:
            flash("Nombre y correo son obligatorios.")
            return redirect(url_for("user_access"))
        if not is_allowed_email(email):
            flash(domain_error_message())
            return redirect(url_for("user_access"))
        role = data["role"] if data["role"] in ROLES else ROLE_EXECUTIVE
        area = None
        if role == ROLE_EXECUTIVE:
            if data["area"] not in AREAS:
                flash("Selecciona un área válida.")
                return redirect(url_for("user_access"))
            area = data["area"]
        if db.query(Profile).filter(func.lower(Profile.email) == email).first():
            flash("Ya existe un usuario con ese correo.")
            return redirect(url_for("user_access"))

        db.add(
            Profile(
                id=str(uuid.uuid4()),
                name=data["name"],
                email=email,
                role=role,
                area=area,
                avatar=avatar_url(email),
                created_at=now_utc(),
            )
        )
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            app.logger.exception("Profile insert failed")
            flash(f"Error al crear el usuario: {exc}")
            return redirect(url_for("user_access"))
        flash("Usuario creado.")
        return redirect(url_for("user_access"))

    profiles = db.query(Profile).order_by(Profile.created_at.desc(), Profile.name).all()
    return render_template_string(
        USERS_HTML,
        users=[serialize_profile(p) for p in profiles],
        roles=ROLES,
        areas=AREAS,
    )


@app.route("/users/<user_id>/delete", methods=["POST"])
@login_required
@view_required(VIEW_USERS)
def delete_user(user_id: str):
    if user_id == current_user()["id"]:
        flash("No puedes eliminar tu propio usuario.")
        return redirect(url_for("user_access"))
    db = get_session()
    profile = db.get(Profile, user_id)
    if not profile:
        flash("Usuario no encontrado.")
        return redirect(url_for("user_access"))
    db.delete(profile)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        app.logger.exception("Profile delete failed")
        flash(f"Error al eliminar el usuario: {exc}")
        return redirect(url_for("user_access"))
    flash("Usuario eliminado.")
    return redirect(url_for("user_access"))


# --------------------------------------------------------------------------------------
# CLI
# --------------------------------------------------------------------------------------


@app.cli.command("init-db")
def init_db_command():
    init_db()
    click.echo("Tables ready.")


@app.cli.command("verify-storage")
@click.option("--bucket", default=STORAGE_BUCKET, show_default=True)
def verify_storage_command(bucket):
    """Check that the attachments bucket exists and accepts uploads."""

    if not verify_bucket(bucket):
        raise click.ClickException(f'Bucket "{bucket}" is missing or not readable.')
    click.echo(f'Bucket "{bucket}" is reachable.')
    if not verify_upload(bucket):
        raise click.ClickException("The bucket exists but rejected a test upload; review its policies.")
    click.echo("Test upload succeeded.")


# --------------------------------------------------------------------------------------
# Jinja loader (since we keep templates inline in this single file)
# --------------------------------------------------------------------------------------
app.jinja_loader = DictLoader({
    "base.html": BASE_HTML,
    "auth.html": AUTH_HTML,
    "dashboard.html": DASHBOARD_HTML,
    "kanban.html": KANBAN_HTML,
    "new.html": NEW_HTML,
    "detail.html": DETAIL_HTML,
    "analytics.html": ANALYTICS_HTML,
    "users.html": USERS_HTML,
})

# --------------------------------------------------------------------------------------
# Entrypoint
# --------------------------------------------------------------------------------------
if __name__ == "__main__":
    init_db()
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
