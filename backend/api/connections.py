"""Bank connection API endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from api.auth import get_current_owner_id
from api.bank_link import get_aggregator_client
from api.helpers import get_owned_connection_or_404, rate_limited
from database import get_db
from integrations.aggregator_protocol import AggregatorClientProtocol
from integrations.exceptions import AggregatorAuthError, AggregatorError
from schemas.connection import BankConnectionResponse, SyncResponse
from services.audit_service import AuditRecorder, get_audit_recorder
from services.connection_service import ConnectionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/connections", tags=["connections"])


@router.get(
    "",
    response_model=list[BankConnectionResponse],
    dependencies=[Depends(rate_limited("api"))],
)
def list_connections(
    owner_id: str = Depends(get_current_owner_id),
    db: Session = Depends(get_db),
):
    """List the owner's bank connections with their accounts."""
    return ConnectionService.list_connections(db, owner_id)


@router.delete("/{connection_id}", dependencies=[Depends(rate_limited("api"))])
def disconnect(
    connection_id: str,
    owner_id: str = Depends(get_current_owner_id),
    db: Session = Depends(get_db),
    client: AggregatorClientProtocol = Depends(get_aggregator_client),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Revoke the consent (best effort) and delete the connection locally."""
    connection = get_owned_connection_or_404(db, owner_id, connection_id)
    ConnectionService(client, audit=audit).disconnect(db, owner_id, connection)
    return {"status": "ok", "connection_id": connection_id}


@router.post(
    "/{connection_id}/sync",
    response_model=SyncResponse,
    dependencies=[Depends(rate_limited("sync"))],
)
def resync(
    connection_id: str,
    owner_id: str = Depends(get_current_owner_id),
    db: Session = Depends(get_db),
    client: AggregatorClientProtocol = Depends(get_aggregator_client),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Refresh balances and fetch new transactions for an active connection.

    Raises:
        HTTPException:
            - 404 Not Found: Unknown, foreign or non-active connection
            - 502 Bad Gateway: Aggregator authentication or connection error
    """
    connection = get_owned_connection_or_404(db, owner_id, connection_id, active_only=True)
    try:
        result = ConnectionService(client, audit=audit).resync(db, owner_id, connection)
    except AggregatorAuthError as e:
        db.rollback()
        logger.warning("Resync auth failure for connection %s: %s", connection_id, e)
        raise HTTPException(
            status_code=502,
            detail="Bank authorization expired. Please reconnect this bank.",
        )
    except AggregatorError as e:
        db.rollback()
        logger.error("Resync failed for connection %s: %s", connection_id, e)
        raise HTTPException(status_code=502, detail="Failed to reach the bank aggregator")

    return SyncResponse(
        connection_id=connection_id,
        accounts_synced=result.accounts_synced,
        transactions_upserted=result.transactions_upserted,
        errors=[str(err) for err in result.errors],
    )
