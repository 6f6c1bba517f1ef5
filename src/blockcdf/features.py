from __future__ import annotations

from decimal import Decimal
from math import factorial
from typing import Annotated, Literal, Union

import numpy as np
from pydantic import BaseModel, Field, field_validator

INFINITY = Decimal("Infinity")


class DeterministicFeature(BaseModel):
    kind: Literal["deterministic"] = "deterministic"
    value: Decimal = Field(..., ge=0)

    @property
    def eft(self) -> Decimal:
        return self.value

    @property
    def lft(self) -> Decimal:
        return self.value

    def cdf(self, times: np.ndarray) -> np.ndarray:
        return (np.asarray(times, dtype=float) >= float(self.value)).astype(float)

    def sample(self, rng: np.random.Generator, size: int) -> np.ndarray:
        return np.full(size, float(self.value))


class UniformFeature(BaseModel):
    kind: Literal["uniform"] = "uniform"
    eft: Decimal = Field(..., ge=0)
    lft: Decimal

    @field_validator("lft")
    @classmethod
    def _validate_support(cls, v: Decimal, info):  # noqa: ANN001
        eft = info.data.get("eft")
        if eft is not None and v <= eft:
            raise ValueError(f"uniform support is empty: [{eft}, {v}]")
        return v

    def cdf(self, times: np.ndarray) -> np.ndarray:
        a, b = float(self.eft), float(self.lft)
        return np.clip((np.asarray(times, dtype=float) - a) / (b - a), 0.0, 1.0)

    def sample(self, rng: np.random.Generator, size: int) -> np.ndarray:
        return rng.uniform(float(self.eft), float(self.lft), size)


class ExponentialFeature(BaseModel):
    kind: Literal["exponential"] = "exponential"
    rate: float = Field(..., gt=0.0)
    shift: Decimal = Field(Decimal(0), ge=0)

    @property
    def eft(self) -> Decimal:
        return self.shift

    @property
    def lft(self) -> Decimal:
        return INFINITY

    def cdf(self, times: np.ndarray) -> np.ndarray:
        t = np.asarray(times, dtype=float) - float(self.shift)
        return np.where(t >= 0.0, 1.0 - np.exp(-self.rate * np.maximum(t, 0.0)), 0.0)

    def sample(self, rng: np.random.Generator, size: int) -> np.ndarray:
        return float(self.shift) + rng.exponential(1.0 / self.rate, size)


class ErlangFeature(BaseModel):
    kind: Literal["erlang"] = "erlang"
    shape: int = Field(..., ge=1)
    rate: float = Field(..., gt=0.0)

    @property
    def eft(self) -> Decimal:
        return Decimal(0)

    @property
    def lft(self) -> Decimal:
        return INFINITY

    def cdf(self, times: np.ndarray) -> np.ndarray:
        x = self.rate * np.maximum(np.asarray(times, dtype=float), 0.0)
        tail = sum(np.exp(-x) * x**k / factorial(k) for k in range(self.shape))
        return 1.0 - tail

    def sample(self, rng: np.random.Generator, size: int) -> np.ndarray:
        return rng.gamma(self.shape, 1.0 / self.rate, size)


TimingFeature = Annotated[
    Union[DeterministicFeature, UniformFeature, ExponentialFeature, ErlangFeature],
    Field(discriminator="kind"),
]
