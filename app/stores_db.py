"""DB-backed preference store (one row per org/user/preference key)."""

from __future__ import annotations

import logging
from contextvars import ContextVar
from datetime import datetime, timezone

from app.db import execute, fetch_one, get_conn
from preference_store import PreferenceStore

logger = logging.getLogger("entkit.preferences.db")

_ORG_ID: ContextVar[str] = ContextVar("org_id", default="default")
_USER_ID: ContextVar[str] = ContextVar("user_id", default="anonymous")

_SCHEMA_LOGGED: set[str] = set()


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def get_org_id() -> str:
    return _ORG_ID.get()


def set_org_id(value: str):
    return _ORG_ID.set(value)


def reset_org_id(token):
    _ORG_ID.reset(token)


def get_user_id() -> str:
    return _USER_ID.get()


def set_user_id(value: str):
    return _USER_ID.set(value)


def reset_user_id(token):
    _USER_ID.reset(token)


class DbPreferenceStore(PreferenceStore):
    """Preferences scoped to the org and user bound in the current context."""

    def ensure_schema(self) -> None:
        with get_conn() as conn:
            execute(
                conn,
                """
                create table if not exists user_prefs (
                  org_id text not null,
                  user_id text not null,
                  pref_key text not null,
                  value text not null,
                  updated_at text not null,
                  primary key (org_id, user_id, pref_key)
                );
                """,
                query_name="user_prefs.ensure_schema",
            )
        if "user_prefs" not in _SCHEMA_LOGGED:
            logger.info("schema_ready table=user_prefs")
            _SCHEMA_LOGGED.add("user_prefs")

    def _get_raw(self, key: str) -> str | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                select value
                from user_prefs
                where org_id=%s and user_id=%s and pref_key=%s
                """,
                [get_org_id(), get_user_id(), key],
                query_name="user_prefs.get",
            )
        return row.get("value") if row else None

    def _set_raw(self, key: str, raw: str) -> None:
        with get_conn() as conn:
            execute(
                conn,
                """
                insert into user_prefs (org_id, user_id, pref_key, value, updated_at)
                values (%s,%s,%s,%s,%s)
                on conflict (org_id, user_id, pref_key) do update
                  set value=excluded.value, updated_at=excluded.updated_at
                """,
                [get_org_id(), get_user_id(), key, raw, _now()],
                query_name="user_prefs.upsert",
            )

    def _delete_raw(self, key: str) -> None:
        with get_conn() as conn:
            execute(
                conn,
                """
                delete from user_prefs
                where org_id=%s and user_id=%s and pref_key=%s
                """,
                [get_org_id(), get_user_id(), key],
                query_name="user_prefs.delete",
            )
