"""
Pydantic schemas for loan application and approval input
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationInfo, model_validator
from pydantic import ValidationError as PydanticValidationError

from .config import EMIEngineConfig, get_config
from .exceptions import ValidationError


def _limits(info: ValidationInfo) -> EMIEngineConfig:
    return (info.context or {}).get("config") or get_config()


def _check_bounds(name: str, value: Optional[int], low: int, high: int) -> None:
    if value is not None and not low <= value <= high:
        raise ValueError(f"{name} must be between {low} and {high}, got {value}")


class LoanApplication(BaseModel):
    user_id: str = Field(..., min_length=1)
    amount: int = Field(..., description="Principal in whole currency units")
    total_days: int = Field(..., description="Number of daily installments")
    applicant_name: Optional[str] = None

    @model_validator(mode="after")
    def _within_product_limits(self, info: ValidationInfo) -> 'LoanApplication':
        config = _limits(info)
        _check_bounds("amount", self.amount, config.min_loan_amount, config.max_loan_amount)
        _check_bounds("total_days", self.total_days, config.min_total_days, config.max_total_days)
        return self


class LoanApproval(BaseModel):
    """Admin overrides applied when approving; None keeps the applied value"""
    amount: Optional[int] = None
    total_days: Optional[int] = None

    @model_validator(mode="after")
    def _within_product_limits(self, info: ValidationInfo) -> 'LoanApproval':
        config = _limits(info)
        _check_bounds("amount", self.amount, config.min_loan_amount, config.max_loan_amount)
        _check_bounds("total_days", self.total_days, config.min_total_days, config.max_total_days)
        return self


def parse(model: type, config: Optional[EMIEngineConfig] = None, **data: Any) -> BaseModel:
    """
    Validate input against a schema, with product limits from config
    (the global configuration when None).

    Raises:
        ValidationError: with every failing field in the message
    """
    try:
        return model.model_validate(data, context={"config": config})
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'input'}: {error['msg']}"
            for error in e.errors()
        )
        raise ValidationError(f"Invalid {model.__name__}: {problems}") from e


def describe(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(exclude_none=True)
