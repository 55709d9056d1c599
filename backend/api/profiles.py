from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from api.deps import get_container
from services.container import ServiceContainer
from utils.session_utils import get_current_user

router = APIRouter(prefix="/profiles", tags=["Profiles"])


@router.get("")
def list_profiles(
    risk: Optional[str] = Query(None),
    vulnerability: Optional[str] = Query(None),
    knowledge: Optional[str] = Query(None),
    user_id: int = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
):
    return container.records.list(risk=risk, vulnerability=vulnerability, knowledge=knowledge)


@router.get("/{employee_id}")
def get_profile(
    employee_id: str,
    user_id: int = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
):
    profile = container.records.get(employee_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    return profile
