from __future__ import annotations

from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator


class Comparison(str, Enum):
    strict = "strict"
    inclusive = "inclusive"


class Combination(str, Enum):
    any = "any"
    all = "all"


class InnerBlockScope(str, Enum):
    dag = "dag"
    composite = "composite"


class ThresholdPolicy(BaseModel):
    comparison: Comparison = Comparison.strict
    combination: Combination = Combination.any

    def exceeds(self, c: int, r: int, c_threshold: int, r_threshold: int) -> bool:
        if self.comparison == Comparison.strict:
            over = (c > c_threshold, r > r_threshold)
        else:
            over = (c >= c_threshold, r >= r_threshold)
        return any(over) if self.combination == Combination.any else all(over)


class SimulationConfig(BaseModel):
    runs: int = Field(10000, ge=1)
    seed: int = 0


class ApproximationConfig(BaseModel):
    pieces: int = Field(10, ge=1)


class AnalysisConfig(BaseModel):
    name: str | None = None
    time_limit: Decimal = Field(..., gt=0)
    step: Decimal = Field(..., gt=0)
    error: Decimal = Field(Decimal("0.001"), gt=0)
    c_threshold: int = Field(..., ge=1)
    r_threshold: int = Field(..., ge=1)
    inner_step: Decimal | None = Field(default=None, gt=0)
    verbose: bool = False

    decomposition_guard: ThresholdPolicy = Field(default_factory=ThresholdPolicy)
    replication_guard: ThresholdPolicy = Field(
        default_factory=lambda: ThresholdPolicy(comparison=Comparison.inclusive, combination=Combination.any)
    )
    inner_block_guard: ThresholdPolicy = Field(
        default_factory=lambda: ThresholdPolicy(comparison=Comparison.strict, combination=Combination.all)
    )
    inner_block_scope: InnerBlockScope = InnerBlockScope.dag

    simulation: SimulationConfig = Field(default_factory=SimulationConfig)
    approximation: ApproximationConfig = Field(default_factory=ApproximationConfig)

    @field_validator("step")
    @classmethod
    def _validate_step(cls, v: Decimal, info):  # noqa: ANN001
        time_limit = info.data.get("time_limit")
        if time_limit is not None and v > time_limit:
            raise ValueError(f"step ({v}) must not exceed time_limit ({time_limit})")
        return v

    @classmethod
    def from_yaml(cls, path: str | Path) -> "AnalysisConfig":
        data = _load_yaml(path)
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Invalid analysis config: {path}\n{exc}") from exc


def _load_yaml(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(str(path))
    try:
        return yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover
        raise ValueError(f"Failed to parse YAML: {p}") from exc
