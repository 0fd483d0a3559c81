from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import uuid4
from datetime import datetime, timezone
import hashlib
import logging
import os
import re
import secrets

# Lightweight adapter over the Supabase client. When SUPABASE_URL is missing an in-memory
# store with the same primitives is used instead (local development and tests).
from supabase import create_client, Client

logger = logging.getLogger(__name__)

# (operator, column, value) with operator in eq, neq, gt, gte, lt, lte, in, ilike
Filter = Tuple[str, str, Any]

DEFAULT_PLAN = "free"
DEFAULT_MINUTES_LIMIT = 60
ACTIVE_APPOINTMENT_STATUSES = ("scheduled", "confirmed")


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class BaseStore:
    """Domain helpers written once over the primitive table operations.

    Subclasses implement select/insert/update/delete/upsert and the auth calls.
    Every helper taking a ``user_id`` filters on it, so a row owned by another
    user is reported as missing.
    """

    # Primitives
    def select(self, table: str, filters: Sequence[Filter] = (), order: Optional[str] = None,
               desc: bool = False, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def update(self, table: str, filters: Sequence[Filter], values: Dict[str, Any]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def delete(self, table: str, filters: Sequence[Filter]) -> int:
        raise NotImplementedError

    def upsert(self, table: str, row: Dict[str, Any], on_conflict: str) -> Dict[str, Any]:
        raise NotImplementedError

    # Auth
    def get_user(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def create_user(self, email: str, password: str, full_name: str = "") -> Dict[str, Any]:
        raise NotImplementedError

    def update_user_password(self, user_id: str, password: str) -> None:
        raise NotImplementedError

    def select_one(self, table: str, filters: Sequence[Filter], order: Optional[str] = None,
                   desc: bool = False) -> Optional[Dict[str, Any]]:
        rows = self.select(table, filters, order=order, desc=desc, limit=1)
        return rows[0] if rows else None

    # Generic owned rows
    def list_owned(self, table: str, user_id: str, order: str = "created_at", desc: bool = True) -> List[Dict[str, Any]]:
        return self.select(table, [("eq", "user_id", user_id)], order=order, desc=desc)

    def get_owned(self, table: str, user_id: str, rid: str) -> Optional[Dict[str, Any]]:
        return self.select_one(table, [("eq", "id", str(rid)), ("eq", "user_id", user_id)])

    def create_owned(self, table: str, user_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(values)
        row["user_id"] = user_id
        return self.insert(table, row)

    def update_owned(self, table: str, user_id: str, rid: str, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not values:
            return self.get_owned(table, user_id, rid)
        rows = self.update(table, [("eq", "id", str(rid)), ("eq", "user_id", user_id)],
                           dict(values, updated_at=utcnow_iso()))
        return rows[0] if rows else None

    def delete_owned(self, table: str, user_id: str, rid: str) -> bool:
        return self.delete(table, [("eq", "id", str(rid)), ("eq", "user_id", user_id)]) > 0

    # Profiles
    def get_profile(self, user_id: str, email: Optional[str] = None) -> Dict[str, Any]:
        profile = self.select_one("profiles", [("eq", "id", user_id)])
        if profile:
            return profile
        return self.insert("profiles", {
            "id": user_id,
            "email": email or "",
            "full_name": "",
            "plan": DEFAULT_PLAN,
            "minutes_used": 0,
            "minutes_limit": DEFAULT_MINUTES_LIMIT,
        })

    def add_minutes_used(self, user_id: str, minutes: int) -> None:
        if minutes <= 0:
            return
        profile = self.get_profile(user_id)
        self.update("profiles", [("eq", "id", user_id)],
                    {"minutes_used": (profile.get("minutes_used") or 0) + minutes})

    # Agents
    def list_agents(self, user_id: str) -> List[Dict[str, Any]]:
        return self.list_owned("agents", user_id)

    def get_owned_agent(self, user_id: str, vendor_agent_id: str) -> Optional[Dict[str, Any]]:
        return self.select_one("agents", [("eq", "elevenlabs_agent_id", vendor_agent_id), ("eq", "user_id", user_id)])

    def get_agent_by_vendor_id(self, vendor_agent_id: str) -> Optional[Dict[str, Any]]:
        return self.select_one("agents", [("eq", "elevenlabs_agent_id", vendor_agent_id)])

    def get_agent(self, agent_id: str) -> Optional[Dict[str, Any]]:
        return self.select_one("agents", [("eq", "id", str(agent_id))])

    def update_owned_agent(self, user_id: str, vendor_agent_id: str, values: Dict[str, Any]) -> None:
        if values:
            self.update("agents", [("eq", "elevenlabs_agent_id", vendor_agent_id), ("eq", "user_id", user_id)],
                        dict(values, updated_at=utcnow_iso()))

    def delete_owned_agent(self, user_id: str, vendor_agent_id: str) -> bool:
        return self.delete("agents", [("eq", "elevenlabs_agent_id", vendor_agent_id), ("eq", "user_id", user_id)]) > 0

    # Conversations
    def create_conversation(self, row: Dict[str, Any]) -> Dict[str, Any]:
        payload = dict(row)
        payload.setdefault("status", "active")
        payload.setdefault("started_at", utcnow_iso())
        return self.insert("conversations", payload)

    def get_owned_conversation(self, user_id: str, conversation_id: str) -> Optional[Dict[str, Any]]:
        return self.get_owned("conversations", user_id, conversation_id)

    def get_owned_conversation_by_vendor_id(self, user_id: str, vendor_conversation_id: str) -> Optional[Dict[str, Any]]:
        return self.select_one("conversations", [
            ("eq", "elevenlabs_conversation_id", vendor_conversation_id),
            ("eq", "user_id", user_id),
        ])

    def update_conversation(self, conversation_id: str, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = self.update("conversations", [("eq", "id", str(conversation_id))], values)
        return rows[0] if rows else None

    def update_conversations_where(self, column: str, value: Any, values: Dict[str, Any]) -> None:
        self.update("conversations", [("eq", column, value)], values)

    def list_conversations(self, user_id: str, vendor_agent_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        filters: List[Filter] = [("eq", "user_id", user_id)]
        if vendor_agent_id:
            filters.append(("eq", "elevenlabs_agent_id", vendor_agent_id))
        rows = self.select("conversations", filters, order="started_at", desc=True, limit=limit)
        agent_names: Dict[str, Optional[str]] = {}
        for conv in rows:
            conv["messages"] = self.select("messages", [("eq", "conversation_id", conv["id"])], order="created_at")
            agent_id = conv.get("agent_id")
            if agent_id and agent_id not in agent_names:
                agent = self.get_agent(agent_id)
                agent_names[agent_id] = agent.get("name") if agent else None
            conv["agent"] = {"name": agent_names.get(agent_id)} if agent_id else None
        return rows

    def add_message(self, conversation_id: str, source: str, content: str) -> Dict[str, Any]:
        return self.insert("messages", {"conversation_id": conversation_id, "source": source, "content": content})

    # Phone numbers
    def find_active_phone_number(self, candidates: Iterable[str]) -> Optional[Dict[str, Any]]:
        numbers = [c for c in dict.fromkeys(candidates) if c]
        if not numbers:
            return None
        return self.select_one("phone_numbers", [("eq", "status", "active"), ("in", "phone_number", numbers)])

    # Contacts & campaigns
    def find_contact_by_phone(self, user_id: str, phone: str) -> Optional[Dict[str, Any]]:
        return self.select_one("contacts", [("eq", "user_id", user_id), ("eq", "phone", phone)])

    def get_campaign(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        return self.select_one("campaign_groups", [("eq", "id", str(campaign_id))])

    def update_campaign(self, campaign_id: str, values: Dict[str, Any]) -> None:
        self.update("campaign_groups", [("eq", "id", str(campaign_id))], dict(values, updated_at=utcnow_iso()))

    def list_campaign_contacts(self, campaign_id: str) -> List[Dict[str, Any]]:
        return self.select("campaign_contacts", [("eq", "campaign_id", str(campaign_id))], order="created_at")

    def next_pending_campaign_contact(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        return self.select_one("campaign_contacts", [("eq", "campaign_id", str(campaign_id)), ("eq", "status", "pending")],
                               order="created_at")

    def update_campaign_contact(self, campaign_contact_id: str, values: Dict[str, Any]) -> None:
        self.update("campaign_contacts", [("eq", "id", str(campaign_contact_id))], values)

    # Widgets
    def get_active_widget(self, agent_id: str) -> Optional[Dict[str, Any]]:
        return self.select_one("widgets", [("eq", "agent_id", str(agent_id)), ("eq", "is_active", True)])

    # Integrations
    def upsert_integration(self, user_id: str, provider: str, values: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(values, user_id=user_id, provider=provider, updated_at=utcnow_iso())
        return self.upsert("integrations", row, on_conflict="user_id,provider")

    def list_active_integrations(self, user_id: str) -> List[Dict[str, Any]]:
        return self.select("integrations", [("eq", "user_id", user_id), ("eq", "is_active", True)],
                           order="created_at", desc=True)

    def get_calendar_integration(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.select_one("integrations", [
            ("eq", "user_id", user_id),
            ("eq", "is_active", True),
            ("in", "provider", ["google", "microsoft"]),
        ])

    def update_integration(self, user_id: str, provider: str, values: Dict[str, Any]) -> None:
        self.update("integrations", [("eq", "user_id", user_id), ("eq", "provider", provider)],
                    dict(values, updated_at=utcnow_iso()))

    # SMS
    def log_sms(self, row: Dict[str, Any]) -> Dict[str, Any]:
        payload = dict(row)
        payload.setdefault("sent_at", utcnow_iso())
        return self.insert("sms_history", payload)

    # One-time codes
    def invalidate_codes(self, table: str, email: str) -> None:
        self.update(table, [("eq", "email", email), ("eq", "used", False)], {"used": True})

    def store_code(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        return self.insert(table, dict(row, used=False))

    def find_valid_code(self, table: str, email: str, code: str, now_iso: str) -> Optional[Dict[str, Any]]:
        return self.select_one(table, [
            ("eq", "email", email),
            ("eq", "code", code),
            ("eq", "used", False),
            ("gt", "expires_at", now_iso),
        ], order="created_at", desc=True)

    def mark_code_used(self, table: str, code_id: str) -> None:
        self.update(table, [("eq", "id", code_id)], {"used": True})

    # Appointments
    def list_active_appointments(self, user_id: str, start_iso: str, end_iso: str) -> List[Dict[str, Any]]:
        return self.select("appointments", [
            ("eq", "user_id", user_id),
            ("gte", "start_at", start_iso),
            ("lte", "start_at", end_iso),
            ("in", "status", list(ACTIVE_APPOINTMENT_STATUSES)),
        ])

    # Per-agent tool configuration (agent_rdv_config, agent_order_config...)
    def get_agent_config(self, table: str, agent_id: str) -> Optional[Dict[str, Any]]:
        return self.select_one(table, [("eq", "agent_id", str(agent_id))])

    def get_agent_config_by_secret(self, table: str, secret: str) -> Optional[Dict[str, Any]]:
        return self.select_one(table, [("eq", "webhook_secret", secret)])

    def latest_agent_call_sid(self, agent_id: str) -> Optional[str]:
        for conv in self.select("conversations", [("eq", "agent_id", str(agent_id)), ("in", "status", ["active", "ended"])],
                                order="started_at", desc=True, limit=10):
            if conv.get("twilio_call_sid"):
                return conv["twilio_call_sid"]
        return None


def _coerce(value: Any) -> Any:
    # ISO timestamps compare as instants, whatever their offset
    if isinstance(value, str) and len(value) >= 10 and value[4:5] == "-" and value[7:8] == "-":
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    return value


def _like(value: str, pattern: str) -> bool:
    # SQL ILIKE with % wildcards only
    regex = ".*".join(re.escape(part) for part in pattern.split("%"))
    return re.fullmatch(regex, value, re.IGNORECASE) is not None


def _matches(row: Dict[str, Any], filters: Sequence[Filter]) -> bool:
    for op, column, expected in filters:
        actual = row.get(column)
        if op == "eq":
            if actual != expected:
                return False
        elif op == "ilike":
            if actual is None or not _like(str(actual), expected):
                return False
        elif op == "neq":
            if actual == expected:
                return False
        elif op == "in":
            if actual not in expected:
                return False
        else:
            if actual is None:
                return False
            a, b = _coerce(actual), _coerce(expected)
            if op == "gt" and not a > b:
                return False
            if op == "gte" and not a >= b:
                return False
            if op == "lt" and not a < b:
                return False
            if op == "lte" and not a <= b:
                return False
    return True


class InMemoryDB(BaseStore):
    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.users: Dict[str, Dict[str, Any]] = {}
        self.tokens: Dict[str, str] = {}

    def _rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def select(self, table, filters=(), order=None, desc=False, limit=None):
        rows = [dict(r) for r in self._rows(table) if _matches(r, filters)]
        if order:
            present = [r for r in rows if r.get(order) is not None]
            missing = [r for r in rows if r.get(order) is None]
            present.sort(key=lambda r: _coerce(r[order]), reverse=desc)
            rows = present + missing
        if limit is not None:
            rows = rows[:limit]
        return rows

    def insert(self, table, row):
        now = utcnow_iso()
        obj = dict(row)
        obj.setdefault("id", str(uuid4()))
        obj.setdefault("created_at", now)
        obj.setdefault("updated_at", now)
        self._rows(table).append(obj)
        return dict(obj)

    def update(self, table, filters, values):
        updated = []
        for r in self._rows(table):
            if _matches(r, filters):
                r.update(values)
                updated.append(dict(r))
        return updated

    def delete(self, table, filters):
        rows = self._rows(table)
        keep = [r for r in rows if not _matches(r, filters)]
        removed = len(rows) - len(keep)
        self.tables[table] = keep
        return removed

    def upsert(self, table, row, on_conflict):
        keys = [k.strip() for k in on_conflict.split(",")]
        filters = [("eq", k, row.get(k)) for k in keys]
        existing = self.update(table, filters, row)
        if existing:
            return existing[0]
        return self.insert(table, row)

    # Auth
    def issue_token(self, user_id: str) -> str:
        token = secrets.token_urlsafe(24)
        self.tokens[token] = user_id
        return token

    def get_user(self, token):
        user_id = self.tokens.get(token or "")
        user = self.users.get(user_id) if user_id else None
        return {"id": user["id"], "email": user["email"]} if user else None

    def find_user_by_email(self, email):
        for user in self.users.values():
            if user["email"] == email:
                return {"id": user["id"], "email": user["email"]}
        return None

    def create_user(self, email, password, full_name=""):
        if self.find_user_by_email(email):
            raise ValueError(f"User {email} already exists")
        uid = str(uuid4())
        self.users[uid] = {
            "id": uid,
            "email": email,
            "full_name": full_name,
            "password_hash": hashlib.sha256(password.encode()).hexdigest(),
        }
        return {"id": uid, "email": email}

    def update_user_password(self, user_id, password):
        self.users[user_id]["password_hash"] = hashlib.sha256(password.encode()).hexdigest()


class SupabaseDB(BaseStore):
    def __init__(self, client: Client) -> None:
        self.client = client

    @staticmethod
    def _apply(query, filters: Sequence[Filter]):
        for op, column, value in filters:
            if op == "in":
                query = query.in_(column, list(value))
            else:
                query = getattr(query, op)(column, value)
        return query

    def select(self, table, filters=(), order=None, desc=False, limit=None):
        query = self._apply(self.client.table(table).select("*"), filters)
        if order:
            query = query.order(order, desc=desc)
        if limit is not None:
            query = query.limit(limit)
        res = query.execute()
        return res.data or []

    def insert(self, table, row):
        res = self.client.table(table).insert(row).execute()
        return (res.data or [{}])[0]

    def update(self, table, filters, values):
        res = self._apply(self.client.table(table).update(values), filters).execute()
        return res.data or []

    def delete(self, table, filters):
        res = self._apply(self.client.table(table).delete(), filters).execute()
        return len(res.data or [])

    def upsert(self, table, row, on_conflict):
        res = self.client.table(table).upsert(row, on_conflict=on_conflict).execute()
        return (res.data or [{}])[0]

    # Auth
    def get_user(self, token):
        if not token:
            return None
        try:
            res = self.client.auth.get_user(token)
        except Exception as e:
            logger.warning(f"Token rejected by auth API: {e}")
            return None
        user = getattr(res, "user", None)
        if not user:
            return None
        return {"id": user.id, "email": user.email}

    def find_user_by_email(self, email):
        for user in self.client.auth.admin.list_users() or []:
            if user.email == email:
                return {"id": user.id, "email": user.email}
        return None

    def create_user(self, email, password, full_name=""):
        res = self.client.auth.admin.create_user({
            "email": email,
            "password": password,
            "email_confirm": True,
            "user_metadata": {"full_name": full_name},
        })
        return {"id": res.user.id, "email": res.user.email}

    def update_user_password(self, user_id, password):
        self.client.auth.admin.update_user_by_id(user_id, {"password": password})


_client: Optional[Client] = None
_db_instance: Optional[BaseStore] = None


def get_db() -> BaseStore:
    global _client, _db_instance

    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if url and key:
        if _client is None:
            _client = create_client(url, key)
        if _db_instance is None or not isinstance(_db_instance, SupabaseDB):
            _db_instance = SupabaseDB(_client)
        return _db_instance
    if _db_instance is None or not isinstance(_db_instance, InMemoryDB):
        logger.info("SUPABASE_URL not set, using in-memory store")
        _db_instance = InMemoryDB()
    return _db_instance
