from __future__ import annotations

from typing import Dict, List, Optional

from sqlalchemy import func

from db import models
from db.database import Database
from services.query_synthesizer import StructuredFilter

LEVEL_FIELDS = ("risk", "vulnerability", "knowledge")
TEXT_FIELDS = ("name", "designation")


def profile_to_dict(profile: models.EmployeeProfile) -> Dict[str, object]:
    return {
        "employeeId": profile.employee_id,
        "name": profile.name,
        "designation": profile.designation,
        "knowledge": profile.knowledge,
        "risk": profile.risk,
        "vulnerability": profile.vulnerability,
        "attackVectors": list(profile.attack_vectors or []),
    }


def public_view(record: Dict[str, object]) -> Dict[str, object]:
    """Subset of a profile that answer payloads expose."""
    return {
        "name": record.get("name"),
        "designation": record.get("designation"),
        "risk": record.get("risk"),
        "knowledge": record.get("knowledge"),
        "vulnerability": record.get("vulnerability"),
        "attackVectors": record.get("attackVectors") or [],
    }


class RecordSource:
    """Read-only access to employee risk profiles."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def find(self, filter: Optional[StructuredFilter] = None, limit: int = 50) -> List[Dict[str, object]]:
        constraints = filter.as_dict() if filter is not None else {}
        db = self.database.session()
        try:
            query = db.query(models.EmployeeProfile)
            for field in LEVEL_FIELDS:
                if field in constraints:
                    query = query.filter(getattr(models.EmployeeProfile, field) == constraints[field])
            for field in TEXT_FIELDS:
                if field in constraints:
                    column = getattr(models.EmployeeProfile, field)
                    query = query.filter(func.lower(column).contains(constraints[field].lower()))
            rows = query.order_by(models.EmployeeProfile.employee_id).limit(limit).all()
            return [profile_to_dict(r) for r in rows]
        finally:
            db.close()

    def list(
        self,
        risk: Optional[str] = None,
        vulnerability: Optional[str] = None,
        knowledge: Optional[str] = None,
        limit: int = 500,
    ) -> List[Dict[str, object]]:
        levels = {"risk": risk, "vulnerability": vulnerability, "knowledge": knowledge}
        db = self.database.session()
        try:
            query = db.query(models.EmployeeProfile)
            for field, value in levels.items():
                if value:
                    query = query.filter(getattr(models.EmployeeProfile, field) == str(value).lower())
            rows = query.order_by(models.EmployeeProfile.employee_id).limit(limit).all()
            return [profile_to_dict(r) for r in rows]
        finally:
            db.close()

    def get(self, employee_id: str) -> Optional[Dict[str, object]]:
        db = self.database.session()
        try:
            row = (
                db.query(models.EmployeeProfile)
                .filter(models.EmployeeProfile.employee_id == employee_id)
                .first()
            )
            return profile_to_dict(row) if row else None
        finally:
            db.close()
