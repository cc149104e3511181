"""Machine assignment and beneficiary endpoints"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from settlement_gateway.api.dependencies import get_user_id
from settlement_gateway.api.v1.schemas import (
    AssignmentListResponse,
    AssignmentRequest,
    AssignmentSchema,
    BeneficiaryRequest,
    BeneficiarySchema,
)
from settlement_gateway.domain.exceptions import AssignmentConflictError
from settlement_gateway.infrastructure.database.repositories import (
    AssignmentRepository,
    AuditRepository,
    BeneficiaryRepository,
)
from settlement_gateway.infrastructure.database.session import get_db

router = APIRouter()


@router.post("/assignments", response_model=AssignmentSchema, status_code=201)
def create_assignment(
    request_body: AssignmentRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Assign a machine to a beneficiary.

    A machine has at most one active assignment; pass replace=true to
    supersede it. Commission changes apply from the new row's assigned_at.
    """
    user_id = get_user_id(request)
    try:
        row = AssignmentRepository(db).assign(
            request_body.machine_id,
            request_body.beneficiary_id,
            request_body.commission_percent,
            created_by=user_id,
            replace=request_body.replace,
        )
    except AssignmentConflictError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))

    AuditRepository(db).log(
        "assign_machine",
        "machine_assignment",
        str(row.id),
        {
            "machine_id": row.machine_id,
            "beneficiary_id": row.beneficiary_id,
            "commission_percent": str(row.commission_percent),
        },
        user_id,
    )
    db.commit()
    return AssignmentSchema.model_validate(row)


@router.delete("/assignments/{assignment_id}", response_model=AssignmentSchema)
def delete_assignment(assignment_id: int, request: Request, db: Session = Depends(get_db)):
    """Close an active assignment; the row is kept for history"""
    row = AssignmentRepository(db).unassign(assignment_id)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Active assignment {assignment_id} not found")

    AuditRepository(db).log(
        "unassign_machine",
        "machine_assignment",
        str(row.id),
        {"machine_id": row.machine_id, "beneficiary_id": row.beneficiary_id},
        get_user_id(request),
    )
    db.commit()
    return AssignmentSchema.model_validate(row)


@router.get("/assignments", response_model=AssignmentListResponse)
def list_assignments(
    beneficiary_id: Optional[str] = Query(None),
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db),
):
    rows = AssignmentRepository(db).list_rows(beneficiary_id, active_only=not include_inactive)
    return AssignmentListResponse(assignments=[AssignmentSchema.model_validate(r) for r in rows])


@router.put("/beneficiaries/{beneficiary_id}", response_model=BeneficiarySchema)
def upsert_beneficiary(
    beneficiary_id: str,
    request_body: BeneficiaryRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """Create or update a beneficiary's virtual account and onboarding date"""
    row = BeneficiaryRepository(db).upsert(
        beneficiary_id,
        name=request_body.name,
        virtual_account=request_body.virtual_account,
        onboarded_at=request_body.onboarded_at,
    )
    AuditRepository(db).log(
        "upsert_beneficiary",
        "beneficiary",
        beneficiary_id,
        request_body.model_dump(mode="json", exclude_none=True),
        get_user_id(request),
    )
    db.commit()
    return BeneficiarySchema.model_validate(row)
