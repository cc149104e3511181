"""Signing key management - status only, key material never leaves the store"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from settlement_gateway.api.dependencies import get_credentials, get_request_id, get_user_id
from settlement_gateway.api.v1.schemas import KeysResponse, KeyStatus, KeyUploadRequest
from settlement_gateway.domain.exceptions import CredentialError
from settlement_gateway.domain.models import Layer
from settlement_gateway.infrastructure.credentials import CredentialStore
from settlement_gateway.infrastructure.database.repositories import AuditRepository
from settlement_gateway.infrastructure.database.session import get_db

router = APIRouter()


@router.get("/keys", response_model=KeysResponse)
def get_keys_status(credentials: CredentialStore = Depends(get_credentials)):
    return KeysResponse(layers={layer: KeyStatus(**status) for layer, status in credentials.status().items()})


@router.put("/keys/{layer}", response_model=KeyStatus)
def save_key(
    layer: Layer,
    request_body: KeyUploadRequest,
    request: Request,
    credentials: CredentialStore = Depends(get_credentials),
    db: Session = Depends(get_db),
):
    """Validate and atomically replace the signing credential of a layer"""
    try:
        credential = credentials.save(
            layer,
            request_body.private_key,
            request_body.signer_id,
            key_fingerprint=request_body.key_fingerprint,
        )
    except CredentialError as e:
        logging.warning(f"Credential rejected: {e}", extra={"request_id": get_request_id(request)})
        raise HTTPException(status_code=400, detail=str(e))

    AuditRepository(db).log(
        "save_credential",
        "credential",
        layer.value,
        {"signer_id": credential.signer_id, "key_fingerprint": credential.key_fingerprint},
        get_user_id(request),
    )
    db.commit()
    return KeyStatus(configured=True, signer_id=credential.signer_id, key_fingerprint=credential.key_fingerprint)
