from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.database import get_db
from app.db.store import FormStore
from app.forms.service import FormOrchestrator
from app.integrations.identity import IdentityClient


def get_identity_client(request: Request) -> IdentityClient:
    """The identity client is built once in the app lifespan and shared by requests."""
    identity = getattr(request.app.state, "identity", None)
    if identity is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Identity provider not configured")
    return identity


def get_form_store(db: AsyncSession = Depends(get_db)) -> FormStore:
    return FormStore(db, autocommit=not settings.FORMS_ATOMIC_WRITES)


def get_orchestrator(
    store: FormStore = Depends(get_form_store),
    identity: IdentityClient = Depends(get_identity_client),
) -> FormOrchestrator:
    return FormOrchestrator(store, identity)
