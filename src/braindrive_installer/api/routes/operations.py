from typing import Any, List

from fastapi import APIRouter
from pydantic import BaseModel

from braindrive_installer.core.catalog.operations import CATALOG

router = APIRouter()


class OperationInfo(BaseModel):
    """Public description of one audited operation."""

    name: str
    purpose: str
    classification: str
    timeout: float
    reports_progress: bool
    parameters: dict[str, Any]


@router.get("/operations", response_model=List[OperationInfo])
async def list_operations():
    """List the audited operation catalog."""
    return [
        OperationInfo(
            name=spec.name,
            purpose=spec.purpose,
            classification=spec.classification.value,
            timeout=spec.timeout,
            reports_progress=spec.reports_progress,
            parameters=spec.parameters_schema,
        )
        for spec in CATALOG.values()
    ]
