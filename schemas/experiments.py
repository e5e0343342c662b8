from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class ExperimentVariantDefinition(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    name: Optional[str] = None
    trafficAllocation: int = Field(ge=0, le=100)
    parameters: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("variant id must not be blank")
        return stripped


class ExperimentDefinition(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    name: Optional[str] = None
    description: Optional[str] = None
    isActive: bool = True
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    variants: List[ExperimentVariantDefinition] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_allocations(self) -> "ExperimentDefinition":
        total = sum(variant.trafficAllocation for variant in self.variants)
        if total != 100:
            raise ValueError(f"traffic allocations for {self.id} sum to {total}, expected 100")
        ids = [variant.id for variant in self.variants]
        if len(set(ids)) != len(ids):
            raise ValueError(f"duplicate variant ids in {self.id}")
        if self.startDate and self.endDate and self.endDate <= self.startDate:
            raise ValueError(f"endDate must be after startDate for {self.id}")
        return self


class ExperimentCatalog(BaseModel):
    experiments: List[ExperimentDefinition] = Field(default_factory=list)


__all__ = ["ExperimentCatalog", "ExperimentDefinition", "ExperimentVariantDefinition"]
