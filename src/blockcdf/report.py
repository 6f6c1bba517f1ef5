from __future__ import annotations

from decimal import Decimal
from enum import Enum

import numpy as np
from pydantic import BaseModel, Field

from .cdf import area_distance, expected_value, ks_distance, quantile


class StepAction(str, Enum):
    closed_form = "closed_form"
    xor = "xor"
    and_ = "and"
    sequence = "sequence"
    repeat_replaced = "repeat_replaced"
    repeat_body_replaced = "repeat_body_replaced"
    inner_block = "inner_block"
    replication = "replication"
    tail_split = "tail_split"
    oracle = "oracle"


class AnalysisStep(BaseModel):
    action: StepAction
    block: str
    depth: int = Field(..., ge=0)
    c: int | None = None
    r: int | None = None
    simplified_c: int | None = None
    simplified_r: int | None = None
    target: str | None = None
    seconds: float = Field(0.0, ge=0.0)


class CdfSummary(BaseModel):
    expected_time: float = Field(..., ge=0.0)
    final_value: float
    median: float | None = None
    p90: float | None = None

    @classmethod
    def from_cdf(cls, cdf: np.ndarray, step: Decimal) -> "CdfSummary":
        return cls(
            expected_time=expected_value(cdf, step),
            final_value=float(cdf[-1]),
            median=quantile(cdf, step, 0.5),
            p90=quantile(cdf, step, 0.9),
        )


class ReferenceComparison(BaseModel):
    ks: float = Field(..., ge=0.0)
    area: float = Field(..., ge=0.0)

    @classmethod
    def between(cls, cdf: np.ndarray, reference: np.ndarray, step: Decimal) -> "ReferenceComparison":
        return cls(ks=ks_distance(cdf, reference), area=area_distance(cdf, reference, step))


class ReportPaths(BaseModel):
    config: str
    model: str
    reference: str | None = None


class AnalysisReport(BaseModel):
    generated_at: str
    model: str
    time_limit: Decimal
    step: Decimal
    error: Decimal
    c_threshold: int = Field(..., ge=1)
    r_threshold: int = Field(..., ge=1)
    paths: ReportPaths | None = None
    times: list[float]
    cdf: list[float]
    summary: CdfSummary
    steps: list[AnalysisStep] = Field(default_factory=list)
    elapsed_s: float = Field(..., ge=0.0)
    comparison: ReferenceComparison | None = None
    notes: list[str] = Field(default_factory=list)
