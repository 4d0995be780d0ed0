from __future__ import annotations

from datetime import datetime

from pydantic.dataclasses import dataclass as pydantic_dataclass


@pydantic_dataclass(frozen=True)
class PredictionResponse:
    predictedDigit: int  # noqa: N815 - wire field name


@pydantic_dataclass(frozen=True)
class ApiErrorResponse:
    timestamp: datetime
    status: int
    error: str
    message: str
    path: str
