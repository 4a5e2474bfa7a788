"""
Form document model.

Turns persisted rows into a single `FormDocument`, checks the minimal
requirements for a create/replace payload and decides which fields are in
scope for a given step. The builder and the public submission flow both go
through `select_renderable_fields`, so step scoping is defined here only.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from app.core.exceptions import ValidationError
from app.db.enums import FormType
from app.forms.schemas import FieldRead, FormDocument, FormInput, StepRead

MULTI_STEP = FormType.multi_step.value
SINGLE = FormType.single.value


def _order_key(row: Mapping[str, Any]) -> int:
    value = row.get("order_index")
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def in_builder_order(
    fields: Sequence[Mapping[str, Any]],
    steps: Sequence[Mapping[str, Any]],
) -> List[Mapping[str, Any]]:
    """
    Order fields the way the builder shows them: grouped by the position of
    their step, fields without a known step last, then by order_index
    within the group.
    """
    position = {step["id"]: index for index, step in enumerate(sorted(steps, key=_order_key))}
    unassigned = len(position)
    return sorted(fields, key=lambda f: (position.get(f.get("step_id"), unassigned), _order_key(f)))


def effective_form_type(stored_form_type: Optional[str], step_count: int) -> str:
    """A multi-step form without steps is read as a single form."""
    if stored_form_type == MULTI_STEP and step_count == 0:
        return SINGLE
    return stored_form_type or SINGLE


def assemble(
    form: Mapping[str, Any],
    steps: Sequence[Mapping[str, Any]],
    fields: Sequence[Mapping[str, Any]],
) -> FormDocument:
    """
    Build a FormDocument from raw rows.

    Steps are sorted by order_index and fields by `in_builder_order`, both
    with a stable sort, so ties keep their input order. Negative, duplicate
    or missing indexes are tolerated. The stored form_type is left
    untouched; only the effective `form_type` of the document is corrected.
    """
    ordered_steps = sorted(steps, key=_order_key)
    ordered_fields = in_builder_order(fields, ordered_steps)
    stored_type = form.get("form_type") or SINGLE

    data = dict(form)
    data.update(
        form_type=effective_form_type(stored_type, len(ordered_steps)),
        stored_form_type=stored_type,
        settings=form.get("settings") or {},
        steps=[StepRead.model_validate({**step, "order_index": _order_key(step)}) for step in ordered_steps],
        fields=[FieldRead.model_validate({**f, "order_index": _order_key(f)}) for f in ordered_fields],
    )
    return FormDocument.model_validate(data)


@dataclass
class ValidationResult:
    ok: bool
    field_errors: Dict[str, str] = field(default_factory=dict)

    def raise_for_errors(self) -> None:
        if not self.ok:
            raise ValidationError("Missing required fields", field_errors=self.field_errors)


def validate_for_create_or_replace(payload: FormInput, *, require_company: bool = True) -> ValidationResult:
    """
    Check the minimum a create/replace payload needs.

    Title and tenant are required (the tenant only on create, it is
    immutable afterwards). Fields need a `type` and steps of a multi-step form
    need a `title`. Anything else, an unknown field type included, is left
    to the persistence layer.
    """
    errors: Dict[str, str] = {}

    if not (payload.title or "").strip():
        errors["title"] = "Title is required"
    if require_company and not (payload.company_id or "").strip():
        errors["company_id"] = "Company ID is required"
    if payload.form_type not in (SINGLE, MULTI_STEP):
        errors["form_type"] = f"Unknown form type: {payload.form_type}"

    if payload.form_type == MULTI_STEP:
        for index, step in enumerate(payload.steps):
            if not (step.title or "").strip():
                errors[f"steps[{index}].title"] = "Step title is required"

    for index, form_field in enumerate(payload.fields):
        if not (form_field.type or "").strip():
            errors[f"fields[{index}].type"] = "Field type is required"

    return ValidationResult(ok=not errors, field_errors=errors)


def select_renderable_fields(document: FormDocument, current_step_index: Optional[int] = None) -> List[FieldRead]:
    """
    Fields in scope for rendering / submission.

    Single forms: every field without a step. Multi-step forms: the fields
    bound to the step at `current_step_index` (default first step); an
    index outside the step list selects nothing. A nominally multi-step
    document without steps returns every field.
    """
    ordered = sorted(document.fields, key=lambda f: f.order_index)

    if not document.is_multi_step:
        return [f for f in ordered if f.step_id is None]

    if not document.steps:
        return ordered

    index = 0 if current_step_index is None else current_step_index
    if index < 0 or index >= len(document.steps):
        return []
    step_id = document.steps[index].id
    return [f for f in ordered if f.step_id == step_id]
