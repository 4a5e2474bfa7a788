"""
Form persistence orchestrator.

Owns the write path for forms: create, full replace, delete, activity
toggle, tenant-scoped reordering and response submission. Steps and fields
are never patched. Every replace deletes them and inserts the submitted set
again, resolving client-side temporary step ids to the ids the database
assigns.
"""
import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from app.core.exceptions import NotFoundError, PartialWriteError, PersistenceError, ValidationError
from app.core.logging import forms_logger, log_operation
from app.db.enums import CONTENT_FIELD_TYPES
from app.db.models import utc_now
from app.db.store import FormStore
from app.forms.document import MULTI_STEP, assemble, validate_for_create_or_replace
from app.forms.schemas import FormDocument, FormInput, ReorderEntry, ReorderResult
from app.integrations.identity import IdentityClient

DISPLAY_NAME_TIMEOUT_SECONDS = 2.0


def coerce_answer_value(value: Any) -> Optional[str]:
    """Answers are stored as text; empty answers are stored as NULL."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value)
    return str(value)


@dataclass
class _WriteScope:
    operation: str
    baseline: int
    stage: str = "starting"
    failed_at: Optional[str] = None


class FormOrchestrator:
    def __init__(
        self,
        store: FormStore,
        identity: Optional[IdentityClient] = None,
        *,
        display_name_timeout: float = DISPLAY_NAME_TIMEOUT_SECONDS,
    ):
        self._store = store
        self._identity = identity
        self._display_name_timeout = display_name_timeout

    @asynccontextmanager
    async def _write_scope(self, operation: str):
        """
        Run a group of writes as one unit and attach operation context to
        persistence failures. If the store already committed part of the
        group, the failure is reported as a PartialWriteError.
        """
        scope = _WriteScope(operation=operation, baseline=self._store.committed_writes)
        try:
            async with self._store.transaction():
                yield scope
        except PartialWriteError:
            raise
        except PersistenceError as exc:
            completed = self._store.committed_writes - scope.baseline
            if completed > 0:
                raise PartialWriteError(
                    f"{operation} failed while {scope.stage} after {completed} committed writes; reload before retrying",
                    operation=operation,
                    stage=scope.stage,
                    completed=completed,
                    failed_at=scope.failed_at,
                ) from exc
            raise PersistenceError(
                f"{operation} failed while {scope.stage}",
                operation=operation,
                stage=scope.stage,
            ) from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_form_row(self, form_id: str) -> Optional[Dict[str, Any]]:
        rows = await self._store.select("forms", filters={"id": form_id})
        return rows[0] if rows else None

    async def _document_for(self, form: Mapping[str, Any], *, always_load_steps: bool = False) -> FormDocument:
        steps: List[Dict[str, Any]] = []
        if always_load_steps or form.get("form_type") == MULTI_STEP:
            steps = await self._store.select("form_steps", filters={"form_id": form["id"]}, order_by="order_index")
        fields = await self._store.select("form_fields", filters={"form_id": form["id"]}, order_by="order_index")
        return assemble(form, steps, fields)

    async def get_form(self, form_id: str) -> FormDocument:
        form = await self.get_form_row(form_id)
        if form is None:
            raise NotFoundError("Form not found", details={"form_id": form_id})
        return await self._document_for(form, always_load_steps=True)

    async def list_forms(self, company_id: str, *, include_inactive: bool = False) -> List[FormDocument]:
        if not company_id:
            raise ValidationError("Company ID is required", field_errors={"company_id": "Company ID is required"})
        filters: Dict[str, Any] = {"company_id": company_id}
        if not include_inactive:
            filters["is_active"] = True
        forms = await self._store.select("forms", filters=filters, order_by="order_index")
        return [await self._document_for(form) for form in forms]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _write_steps_and_fields(self, scope: _WriteScope, form_id: str, payload: FormInput) -> None:
        step_ids: Dict[str, str] = {}
        if payload.form_type == MULTI_STEP and payload.steps:
            scope.stage = "inserting steps"
            for position, step in enumerate(payload.steps):
                created = await self._store.insert(
                    "form_steps",
                    {
                        "form_id": form_id,
                        "title": step.title,
                        "description": step.description,
                        "order_index": position,
                    },
                )
                step_ids[step.id or f"step_{position}"] = created["id"]

        scope.stage = "inserting fields"
        # order_index restarts for every step (unassigned fields form their own group)
        next_index: Dict[Optional[str], int] = {}
        for form_field in payload.fields:
            step_id = step_ids.get(form_field.step_id) if form_field.step_id else None
            if form_field.step_id and step_id is None:
                forms_logger.warning(
                    "Unresolved step reference, storing field without step",
                    form_id=form_id,
                    step_ref=form_field.step_id,
                )
            order_index = next_index.get(step_id, 0)
            next_index[step_id] = order_index + 1
            scope.failed_at = form_field.id
            await self._store.insert(
                "form_fields",
                {
                    "form_id": form_id,
                    "type": form_field.type,
                    "label": form_field.label,
                    "placeholder": form_field.placeholder,
                    "content": form_field.content,
                    "required": form_field.required and form_field.type not in CONTENT_FIELD_TYPES,
                    "options": list(form_field.options),
                    "order_index": order_index,
                    "step_id": step_id,
                },
            )
        scope.failed_at = None

    @log_operation("create_form", forms_logger)
    async def create_form(self, payload: FormInput, created_by: Optional[str] = None) -> FormDocument:
        validate_for_create_or_replace(payload).raise_for_errors()

        async with self._write_scope("create_form") as scope:
            scope.stage = "inserting form"
            form = await self._store.insert(
                "forms",
                {
                    "title": payload.title,
                    "description": payload.description,
                    "company_id": payload.company_id,
                    "created_by": created_by,
                    "form_type": payload.form_type,
                    "settings": payload.settings,
                    "use_default_colors": payload.use_default_colors,
                    "is_active": True,
                },
            )
            await self._write_steps_and_fields(scope, form["id"], payload)

        return await self.get_form(form["id"])

    @log_operation("replace_form", forms_logger)
    async def replace_form(self, form_id: str, payload: FormInput) -> FormDocument:
        """Overwrite a form with the complete payload. Omitted steps and fields are deleted."""
        validate_for_create_or_replace(payload, require_company=False).raise_for_errors()

        async with self._write_scope("replace_form") as scope:
            scope.stage = "updating form"
            updated = await self._store.update(
                "forms",
                {
                    "title": payload.title,
                    "description": payload.description,
                    "form_type": payload.form_type,
                    "settings": payload.settings,
                    "use_default_colors": payload.use_default_colors,
                    "updated_at": utc_now(),
                },
                filters={"id": form_id},
            )
            if not updated:
                raise NotFoundError("Form not found", details={"form_id": form_id})

            scope.stage = "deleting steps"
            await self._store.delete("form_steps", filters={"form_id": form_id})
            scope.stage = "deleting fields"
            await self._store.delete("form_fields", filters={"form_id": form_id})

            await self._write_steps_and_fields(scope, form_id, payload)

        return await self.get_form(form_id)

    @log_operation("delete_form", forms_logger)
    async def delete_form(self, form_id: str) -> None:
        """Delete a form and everything it owns. Unknown ids are a no-op."""
        if await self.get_form_row(form_id) is None:
            forms_logger.info("Delete requested for missing form", form_id=form_id)
            return

        async with self._write_scope("delete_form") as scope:
            scope.stage = "deleting responses"
            responses = await self._store.select("form_responses", filters={"form_id": form_id})
            if responses:
                await self._store.delete(
                    "form_response_data",
                    filters={"response_id": [response["id"] for response in responses]},
                )
                await self._store.delete("form_responses", filters={"form_id": form_id})
            scope.stage = "deleting fields"
            await self._store.delete("form_fields", filters={"form_id": form_id})
            scope.stage = "deleting steps"
            await self._store.delete("form_steps", filters={"form_id": form_id})
            scope.stage = "deleting form"
            await self._store.delete("forms", filters={"id": form_id})

    @log_operation("toggle_form_activity", forms_logger)
    async def toggle_form_activity(self, form_id: str) -> FormDocument:
        async with self._write_scope("toggle_form_activity") as scope:
            scope.stage = "reading form"
            current = await self.get_form_row(form_id)
            if current is None:
                raise NotFoundError("Form not found", details={"form_id": form_id})
            scope.stage = "updating form"
            updated = await self._store.update(
                "forms",
                {"is_active": not current["is_active"], "updated_at": utc_now()},
                filters={"id": form_id},
            )
        return await self._document_for(updated[0])

    @log_operation("reorder_forms", forms_logger)
    async def reorder_forms(self, company_id: Optional[str], ordered_form_ids: Any) -> ReorderResult:
        """
        Give each listed form a one-based order_index matching its position.
        Rows belonging to another company are never touched.
        """
        errors: Dict[str, str] = {}
        if not isinstance(ordered_form_ids, list):
            errors["formIds"] = "formIds must be an array"
        if not company_id:
            errors["companyId"] = "companyId is required"
        if errors:
            raise ValidationError("formIds array and companyId are required", field_errors=errors)

        updated_count = 0
        async with self._write_scope("reorder_forms") as scope:
            scope.stage = "updating order"
            now = utc_now()
            for position, form_id in enumerate(ordered_form_ids):
                scope.failed_at = str(form_id)
                await self._store.update(
                    "forms",
                    {"order_index": position + 1, "updated_at": now},
                    filters={"id": str(form_id), "company_id": company_id},
                )
                updated_count += 1
            scope.failed_at = None

        final = await self._store.select("forms", filters={"company_id": company_id}, order_by="order_index")
        return ReorderResult(
            updated_count=updated_count,
            final_order=[ReorderEntry(id=row["id"], order=row["order_index"]) for row in final],
        )

    async def _resolve_display_name(self, user_id: Optional[str]) -> Optional[str]:
        if not user_id or self._identity is None:
            return None
        try:
            return await asyncio.wait_for(
                self._identity.get_display_name(user_id),
                timeout=self._display_name_timeout,
            )
        except Exception as e:
            forms_logger.warning("Display name lookup failed", error=e, user_id=user_id)
            return None

    @log_operation("submit_form_response", forms_logger)
    async def submit_form_response(
        self,
        form_id: str,
        answers: Any,
        submitted_by: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        if not isinstance(answers, list):
            raise ValidationError("Invalid responses data", field_errors={"responses": "responses must be an array"})

        rows: List[Dict[str, Any]] = []
        for index, answer in enumerate(answers):
            if not isinstance(answer, Mapping) or not answer.get("field_id"):
                raise ValidationError(
                    "Invalid responses data",
                    field_errors={f"responses[{index}].field_id": "field_id is required"},
                )
            rows.append({"field_id": str(answer["field_id"]), "value": coerce_answer_value(answer.get("value"))})

        if await self.get_form_row(form_id) is None:
            raise NotFoundError("Form not found", details={"form_id": form_id})

        username = await self._resolve_display_name(submitted_by)

        async with self._write_scope("submit_form_response") as scope:
            scope.stage = "inserting response"
            response = await self._store.insert(
                "form_responses",
                {
                    "form_id": form_id,
                    "submitted_by": submitted_by or None,
                    "username": username,
                    "ip_address": ip_address,
                    "user_agent": user_agent,
                },
            )
            scope.stage = "inserting response data"
            for row in rows:
                row["response_id"] = response["id"]
            await self._store.insert_many("form_response_data", rows)

        return response["id"]
