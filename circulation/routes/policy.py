from typing import Any, Dict
from fastapi import APIRouter, Body, Depends, HTTPException, status
from sqlalchemy.orm import Session
from circulation.database import get_db
from circulation.schemas.policy import PolicySnapshot, PolicyUpdate
from circulation.services import policy_store
from circulation.utils.validation import validate_payload

router = APIRouter(prefix="/api/settings", tags=["Library Policy"])

@router.get("", response_model=PolicySnapshot)
def get_settings(db: Session = Depends(get_db)):
    """Get the current library policy."""
    return policy_store.get_policy(db)

@router.patch("", response_model=PolicySnapshot)
def update_settings(payload: Dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    """Update library policy; only provided fields change."""
    result = validate_payload(PolicyUpdate, payload)
    if not result.ok:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=[{"field": error.field, "message": error.message} for error in result.errors]
        )
    return policy_store.update_policy(db, result.value)
