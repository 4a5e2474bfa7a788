"""Response listing and flattened JSON export for a form."""
import re
from collections import defaultdict
from typing import Any, Dict, List

from app.core.exceptions import NotFoundError
from app.db.store import FormStore
from app.forms.document import in_builder_order
from app.forms.schemas import ResponseDataRead, ResponseRead

RESPONSE_LIMIT = 10000
UNLABELED_FIELD = "Unlabeled Field"
UNKNOWN_FIELD = "Unknown Field"


async def _responses_with_data(store: FormStore, form_id: str):
    responses = await store.select(
        "form_responses",
        filters={"form_id": form_id},
        order_by="submitted_at",
        descending=True,
        limit=RESPONSE_LIMIT,
    )
    data_by_response: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    if responses:
        rows = await store.select(
            "form_response_data",
            filters={"response_id": [response["id"] for response in responses]},
            order_by="created_at",
        )
        for row in rows:
            data_by_response[row["response_id"]].append(row)
    return responses, data_by_response


async def list_responses(store: FormStore, form_id: str) -> List[ResponseRead]:
    """Newest first, each with its answers labelled by the current field set."""
    fields = await store.select("form_fields", filters={"form_id": form_id})
    labels = {f["id"]: f.get("label") for f in fields}
    responses, data_by_response = await _responses_with_data(store, form_id)

    return [
        ResponseRead(
            id=response["id"],
            form_id=response["form_id"],
            submitted_by=response.get("submitted_by"),
            submitted_at=response.get("submitted_at"),
            ip_address=response.get("ip_address"),
            user_agent=response.get("user_agent"),
            username=response.get("username"),
            data=[
                ResponseDataRead(
                    field_id=item["field_id"],
                    field_label=labels.get(item["field_id"]) or UNLABELED_FIELD,
                    value=item.get("value"),
                )
                for item in data_by_response[response["id"]]
            ],
        )
        for response in responses
    ]


def export_filename(title: str) -> str:
    return f"{re.sub(r'[^a-zA-Z0-9]', '_', title or 'form')}_export.json"


async def build_export(store: FormStore, form_id: str) -> Dict[str, Any]:
    """
    Flatten a form and its responses for download.

    Each response carries its answers twice: keyed by field label for
    spreadsheet-style consumers, and as `raw_responses` with ids and types.
    """
    forms = await store.select("forms", filters={"id": form_id})
    if not forms:
        raise NotFoundError("Form not found", details={"form_id": form_id})
    form = forms[0]

    steps = await store.select("form_steps", filters={"form_id": form_id})
    fields = in_builder_order(await store.select("form_fields", filters={"form_id": form_id}), steps)
    fields_by_id = {f["id"]: f for f in fields}
    position = {f["id"]: index for index, f in enumerate(fields)}
    responses, data_by_response = await _responses_with_data(store, form_id)

    exported_responses = []
    for response in responses:
        by_label: Dict[str, Any] = {}
        raw = []
        # answers follow the form's field order; answers to deleted fields go last
        items = sorted(data_by_response[response["id"]], key=lambda item: position.get(item["field_id"], len(position)))
        for item in items:
            field = fields_by_id.get(item["field_id"])
            if field is not None and field.get("label"):
                by_label[field["label"]] = item.get("value") or ""
            raw.append(
                {
                    "field_id": item["field_id"],
                    "field_label": (field or {}).get("label") or UNKNOWN_FIELD,
                    "field_type": (field or {}).get("type") or "unknown",
                    "value": item.get("value"),
                }
            )
        entry = {
            "id": response["id"],
            "submitted_by": response.get("submitted_by"),
            "submitted_at": response.get("submitted_at"),
            "user_agent": response.get("user_agent"),
        }
        # Field labels never overwrite the response metadata keys
        for label, value in by_label.items():
            entry.setdefault(label, value)
        entry["raw_responses"] = raw
        exported_responses.append(entry)

    return {
        "form": {
            "id": form["id"],
            "title": form["title"],
            "description": form.get("description"),
            "created_at": form.get("created_at"),
            "fields": [
                {
                    "id": f["id"],
                    "label": f.get("label"),
                    "type": f["type"],
                    "required": f.get("required", False),
                    "order_index": f.get("order_index", 0),
                }
                for f in fields
            ],
        },
        "responses": exported_responses,
    }
