from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query

from validator.api.contracts import UnitRequirementsImportRequest
from validator.api.services.runtime import ServicesGetter
from validator.db import insert_unit_requirements
from validator.requirements import RequirementResolutionError, UnitReference, normalize_document_type


def build_requirements_router(*, get_services: ServicesGetter) -> APIRouter:
    router = APIRouter()

    @router.post("/unit-requirements", status_code=201)
    def import_unit_requirements(payload: UnitRequirementsImportRequest) -> dict[str, object]:
        inserted = insert_unit_requirements([row.model_dump() for row in payload.rows])
        return {"inserted": inserted}

    @router.get("/requirements")
    def preview_requirements(
        unit_code: str = Query(..., min_length=1),
        unit_url: str | None = Query(default=None),
        document_type: str = Query(default="unit_assessment"),
    ) -> dict[str, object]:
        try:
            normalized = normalize_document_type(document_type)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        unit = UnitReference(code=unit_code, url=unit_url)
        try:
            requirements = get_services().resolver.resolve(unit, normalized)
        except RequirementResolutionError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {
            "unit_code": unit_code,
            "document_type": normalized,
            "count": len(requirements),
            "requirements": [
                {
                    "key": requirement.key,
                    "category": requirement.category,
                    "number": requirement.number,
                    "text": requirement.text,
                    "element_text": requirement.element_text,
                }
                for requirement in requirements
            ],
        }

    return router
