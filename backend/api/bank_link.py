"""Bank link API endpoints.

Server side of the aggregator's redirect-based consent flow: starting a
link (records the pending rows and returns the aggregator URL) and the
callback the aggregator redirects the browser back to.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from api.auth import get_current_owner_id, get_optional_owner_id
from api.helpers import rate_limited
from database import get_db
from integrations.aggregator_client import AggregatorClient
from integrations.aggregator_protocol import AggregatorClientProtocol
from integrations.exceptions import AggregatorError
from schemas.connection import ConnectResponse
from services.audit_service import AuditRecorder, get_audit_recorder
from services.bank_link_service import BankLinkService, CallbackParams
from services.consent_intent_service import ConsentIntentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bank-link", tags=["bank-link"])


def get_aggregator_client():
    """Dependency for injecting the aggregator client (overridable in tests)."""
    client = AggregatorClient()
    try:
        yield client
    finally:
        client.close()


@router.post(
    "/connect",
    response_model=ConnectResponse,
    dependencies=[Depends(rate_limited("consent"))],
)
def start_link(
    owner_id: str = Depends(get_current_owner_id),
    db: Session = Depends(get_db),
    client: AggregatorClientProtocol = Depends(get_aggregator_client),
):
    """Create an aggregator intent and return the URL to send the browser to."""
    if not client.is_configured():
        raise HTTPException(status_code=400, detail="Bank linking is not configured")

    try:
        started = ConsentIntentService.start_intent(db, client, owner_id)
    except AggregatorError as e:
        db.rollback()
        logger.error("Failed to start bank link for owner %s: %s", owner_id, e)
        raise HTTPException(status_code=502, detail="Failed to start bank connection")

    db.commit()
    return ConnectResponse(
        authorization_url=started.authorization_url,
        intent_id=started.intent_id,
        flow_id=started.flow_id,
    )


@router.get("/callback")
def link_callback(
    status: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    intent_id: Optional[str] = None,
    flow: Optional[str] = None,
    owner_id: Optional[str] = Depends(get_optional_owner_id),
    db: Session = Depends(get_db),
    client: AggregatorClientProtocol = Depends(get_aggregator_client),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Finalize a bank link after the aggregator redirects back.

    Always answers with a 303 redirect to the frontend.
    """
    params = CallbackParams(
        status=status,
        error=error,
        error_description=error_description,
        intent_id=intent_id,
        flow_id=flow,
    )
    outcome = BankLinkService(client, audit=audit).complete_link(db, owner_id, params)
    return RedirectResponse(url=outcome.redirect_url, status_code=303)
