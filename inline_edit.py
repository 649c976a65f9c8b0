"""Inline field editing: Viewing -> Editing -> Saving -> {Viewing, Error -> Viewing}."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List

from resource_config import FieldSpec, FieldType
from resource_gateway import Failure, GatewayResult


logger = logging.getLogger("entkit.inline_edit")

SaveFn = Callable[[str, Any], Awaitable[GatewayResult]]


class EditState(str, Enum):
    VIEWING = "viewing"
    EDITING = "editing"
    SAVING = "saving"
    ERROR = "error"


@dataclass
class EditSession:
    field_name: str
    pending_value: Any
    original_value: Any
    status: EditState = EditState.EDITING
    error: str | None = None


@dataclass(frozen=True)
class EditOutcome:
    field_name: str | None
    saved: bool = False
    value: Any = None
    validation_error: str | None = None
    failure: Failure | None = None
    cancelled: bool = False


def validate_value(spec: FieldSpec, value: Any) -> tuple[Any, str | None]:
    """Coerce a pending value for its field type; returns ``(value, error)``."""
    if spec.type == FieldType.NUMBER:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None, None
        if isinstance(value, bool):
            return value, f"{spec.title} must be a number"
        if isinstance(value, (int, float)):
            return value, None
        try:
            text = str(value).strip()
            return (int(text) if text.lstrip("-").isdigit() else float(text)), None
        except ValueError:
            return value, f"{spec.title} must be a number"
    if spec.type == FieldType.SELECT:
        allowed = spec.option_values()
        if allowed and value not in allowed:
            return value, f"{spec.title} must be one of: {', '.join(str(v) for v in allowed)}"
        return value, None
    if spec.type == FieldType.DATE:
        if value is None or value == "":
            return None, None
        if isinstance(value, (date, datetime)):
            return value.isoformat(), None
        try:
            datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return value, f"{spec.title} must be a date (YYYY-MM-DD)"
        return str(value), None
    return value, None


class InlineEditor:
    """At most one field is ever Editing or Saving.

    ``on_save`` performs the single-field update; the caller applies a
    successful outcome to its entity. A cancelled save's result is ignored.
    """

    def __init__(self, fields: Dict[str, FieldSpec], on_save: SaveFn, *, can_update: bool = True) -> None:
        self._fields = fields
        self._on_save = on_save
        self._can_update = can_update
        self.session: EditSession | None = None
        self.transitions: List[EditState] = [EditState.VIEWING]

    @property
    def state(self) -> EditState:
        return self.session.status if self.session else EditState.VIEWING

    @property
    def field_name(self) -> str | None:
        return self.session.field_name if self.session else None

    def _move(self, state: EditState) -> None:
        if self.session is not None:
            self.session.status = state
        self.transitions.append(state)

    def _close(self) -> None:
        self.session = None
        self.transitions.append(EditState.VIEWING)

    def can_edit(self, field_name: str) -> bool:
        spec = self._fields.get(field_name)
        return bool(self._can_update and spec is not None and spec.editable)

    def begin(self, field_name: str, current_value: Any) -> bool:
        if not self.can_edit(field_name):
            return False
        if self.session is not None:
            if self.session.status == EditState.SAVING:
                return False
            # switching fields abandons the other field's pending value
            self._close()
        self.session = EditSession(field_name, current_value, current_value)
        self.transitions.append(EditState.EDITING)
        return True

    def set_pending(self, value: Any) -> bool:
        if self.session is None or self.session.status != EditState.EDITING:
            return False
        self.session.pending_value = value
        self.session.error = None
        return True

    def cancel(self) -> bool:
        if self.session is None:
            return False
        logger.debug("edit_cancelled field=%s", self.session.field_name)
        self._close()
        return True

    async def handle_key(self, key: str) -> EditOutcome | None:
        if key == "Enter":
            return await self.commit()
        if key == "Escape":
            name = self.field_name
            if self.cancel():
                return EditOutcome(name, cancelled=True)
        return None

    async def commit(self) -> EditOutcome:
        session = self.session
        if session is None or session.status != EditState.EDITING:
            return EditOutcome(self.field_name)
        spec = self._fields[session.field_name]
        value, error = validate_value(spec, session.pending_value)
        if error:
            session.error = error
            return EditOutcome(session.field_name, validation_error=error)

        self._move(EditState.SAVING)
        result = await self._on_save(session.field_name, value)
        if self.session is not session:
            return EditOutcome(session.field_name, cancelled=True)
        if result.ok:
            self._close()
            return EditOutcome(session.field_name, saved=True, value=value)

        logger.warning(
            "edit_save_failed field=%s kind=%s status=%s",
            session.field_name,
            result.failure.kind.value,
            result.failure.status,
        )
        session.error = result.failure.message
        self._move(EditState.ERROR)
        self._close()
        return EditOutcome(session.field_name, failure=result.failure)
