from typing import Literal

from pydantic import BaseModel, Field


class SessionCreateRequest(BaseModel):
    unit_code: str = Field(..., min_length=1, max_length=40)
    unit_url: str | None = Field(default=None, max_length=500)
    unit_title: str | None = Field(default=None, max_length=300)
    document_type: str = Field(default="unit_assessment", min_length=1, max_length=40)


class OperationStatusRequest(BaseModel):
    status: Literal["pending", "running", "completed", "failed"]
    error: str | None = Field(default=None, max_length=2000)


class RevalidateRequest(BaseModel):
    requirement_keys: list[str] | None = Field(default=None, max_length=500)


class UnitRequirementRow(BaseModel):
    category: Literal["knowledge_evidence", "performance_evidence", "foundation_skills", "elements_criteria"]
    number: str = Field(..., min_length=1, max_length=20)
    text: str = Field(..., min_length=1)
    element_text: str | None = None
    unit_url: str | None = None
    unit_code: str | None = None


class UnitRequirementsImportRequest(BaseModel):
    rows: list[UnitRequirementRow] = Field(..., min_length=1)
