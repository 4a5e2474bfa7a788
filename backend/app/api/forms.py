"""
Forms API

Provides:
- Tenant form listing (active forms for members, all forms for admins)
- Create / full replace / delete / activity toggle / reorder
- Public submission and response listing
- JSON export

Business rules live in app.forms; this module only checks access and
translates HTTP to orchestrator calls.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from app.api.deps import get_form_store, get_identity_client, get_orchestrator
from app.core.exceptions import NotFoundError, ValidationError
from app.core.security import get_current_user, require_company_admin, require_company_member
from app.db.store import FormStore
from app.forms.exports import build_export, export_filename, list_responses
from app.forms.schemas import (
    DeleteResult,
    FormEnvelope,
    FormInput,
    FormListEnvelope,
    ReorderRequest,
    ReorderResult,
    ResponseListEnvelope,
    SubmitRequest,
    SubmitResult,
)
from app.forms.service import FormOrchestrator
from app.integrations.identity import IdentityClient


router = APIRouter(prefix="/forms", tags=["Forms"])


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or "unknown"


async def _existing_form(orchestrator: FormOrchestrator, form_id: str) -> Dict[str, Any]:
    form = await orchestrator.get_form_row(form_id)
    if form is None:
        raise NotFoundError("Form not found", details={"form_id": form_id})
    return form


def _require_company_id(company_id: Optional[str]) -> str:
    if not company_id:
        raise ValidationError("Company ID is required", field_errors={"company_id": "Company ID is required"})
    return company_id


# ============================================================================
# Listing
# ============================================================================

@router.get("", response_model=FormListEnvelope)
async def list_forms(
    company_id: Optional[str] = Query(None),
    orchestrator: FormOrchestrator = Depends(get_orchestrator),
    identity: IdentityClient = Depends(get_identity_client),
    current_user: dict = Depends(get_current_user),
):
    """Active forms of a company in display order."""
    company_id = _require_company_id(company_id)
    await require_company_member(identity, current_user, company_id)
    return FormListEnvelope(forms=await orchestrator.list_forms(company_id))


@router.get("/admin", response_model=FormListEnvelope)
async def list_forms_admin(
    company_id: Optional[str] = Query(None),
    orchestrator: FormOrchestrator = Depends(get_orchestrator),
    identity: IdentityClient = Depends(get_identity_client),
    current_user: dict = Depends(get_current_user),
):
    """All forms of a company, inactive ones included. Admin only."""
    company_id = _require_company_id(company_id)
    await require_company_admin(identity, current_user, company_id)
    return FormListEnvelope(forms=await orchestrator.list_forms(company_id, include_inactive=True))


# ============================================================================
# Lifecycle
# ============================================================================

@router.post("", response_model=FormEnvelope, status_code=status.HTTP_201_CREATED)
async def create_form(
    payload: FormInput,
    orchestrator: FormOrchestrator = Depends(get_orchestrator),
    identity: IdentityClient = Depends(get_identity_client),
    current_user: dict = Depends(get_current_user),
):
    # A missing company_id is reported by the orchestrator's validation
    if payload.company_id:
        await require_company_admin(identity, current_user, payload.company_id)
    form = await orchestrator.create_form(payload, created_by=current_user["user_id"])
    return FormEnvelope(form=form)


@router.post("/reorder", response_model=ReorderResult)
async def reorder_forms(
    payload: ReorderRequest,
    orchestrator: FormOrchestrator = Depends(get_orchestrator),
    identity: IdentityClient = Depends(get_identity_client),
    current_user: dict = Depends(get_current_user),
):
    if payload.company_id:
        await require_company_admin(identity, current_user, payload.company_id)
    return await orchestrator.reorder_forms(payload.company_id, payload.form_ids)


@router.get("/{form_id}", response_model=FormEnvelope)
async def get_form(
    form_id: str,
    orchestrator: FormOrchestrator = Depends(get_orchestrator),
    identity: IdentityClient = Depends(get_identity_client),
    current_user: dict = Depends(get_current_user),
):
    form = await orchestrator.get_form(form_id)
    await require_company_member(identity, current_user, form.company_id)
    return FormEnvelope(form=form)


@router.put("/{form_id}", response_model=FormEnvelope)
async def replace_form(
    form_id: str,
    payload: FormInput,
    orchestrator: FormOrchestrator = Depends(get_orchestrator),
    identity: IdentityClient = Depends(get_identity_client),
    current_user: dict = Depends(get_current_user),
):
    """Full replace: steps and fields missing from the payload are deleted."""
    existing = await _existing_form(orchestrator, form_id)
    await require_company_admin(identity, current_user, existing["company_id"])
    return FormEnvelope(form=await orchestrator.replace_form(form_id, payload))


@router.delete("/{form_id}", response_model=DeleteResult)
async def delete_form(
    form_id: str,
    orchestrator: FormOrchestrator = Depends(get_orchestrator),
    identity: IdentityClient = Depends(get_identity_client),
    current_user: dict = Depends(get_current_user),
):
    existing = await orchestrator.get_form_row(form_id)
    if existing is not None:
        await require_company_admin(identity, current_user, existing["company_id"])
    await orchestrator.delete_form(form_id)
    return DeleteResult()


@router.post("/{form_id}/toggle-activity", response_model=FormEnvelope)
async def toggle_form_activity(
    form_id: str,
    orchestrator: FormOrchestrator = Depends(get_orchestrator),
    identity: IdentityClient = Depends(get_identity_client),
    current_user: dict = Depends(get_current_user),
):
    existing = await _existing_form(orchestrator, form_id)
    await require_company_admin(identity, current_user, existing["company_id"])
    form = await orchestrator.toggle_form_activity(form_id)
    state = "activated" if form.is_active else "deactivated"
    return FormEnvelope(form=form, message=f"Form {state} successfully")


# ============================================================================
# Responses
# ============================================================================

@router.post("/{form_id}/submit", response_model=SubmitResult)
async def submit_form(
    form_id: str,
    payload: SubmitRequest,
    request: Request,
    orchestrator: FormOrchestrator = Depends(get_orchestrator),
    identity: IdentityClient = Depends(get_identity_client),
    current_user: dict = Depends(get_current_user),
):
    existing = await _existing_form(orchestrator, form_id)
    await require_company_member(identity, current_user, existing["company_id"])
    response_id = await orchestrator.submit_form_response(
        form_id,
        payload.responses,
        payload.submitted_by or current_user["user_id"],
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent") or "unknown",
    )
    return SubmitResult(response_id=response_id)


@router.get("/{form_id}/responses", response_model=ResponseListEnvelope)
async def get_form_responses(
    form_id: str,
    orchestrator: FormOrchestrator = Depends(get_orchestrator),
    store: FormStore = Depends(get_form_store),
    identity: IdentityClient = Depends(get_identity_client),
    current_user: dict = Depends(get_current_user),
):
    existing = await _existing_form(orchestrator, form_id)
    await require_company_admin(identity, current_user, existing["company_id"])
    return ResponseListEnvelope(responses=await list_responses(store, form_id))


@router.get("/{form_id}/export")
async def export_form(
    form_id: str,
    export_format: str = Query("json", alias="format"),
    orchestrator: FormOrchestrator = Depends(get_orchestrator),
    store: FormStore = Depends(get_form_store),
    identity: IdentityClient = Depends(get_identity_client),
    current_user: dict = Depends(get_current_user),
):
    """JSON export. Other formats get the same payload and are rendered client-side."""
    existing = await _existing_form(orchestrator, form_id)
    await require_company_admin(identity, current_user, existing["company_id"])
    data = await build_export(store, form_id)

    headers = {}
    if export_format == "json":
        headers["Content-Disposition"] = f'attachment; filename="{export_filename(existing["title"])}"'
    return JSONResponse(content=jsonable_encoder(data), headers=headers)
