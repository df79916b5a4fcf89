"""Typed calculation rule parameters.

Each calculation method has its own parameter model; together they form a
discriminated union keyed on ``method`` so a template's stored parameters are
validated once, when they are parsed. Unknown keys are rejected.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from hr_payroll.calculators.types import CalculationMethod

# Largest amount a payroll column (Numeric(14, 2)) can hold.
MAX_AMOUNT = Decimal("999999999999.99")

Money = Annotated[Decimal, Field(ge=0, le=MAX_AMOUNT)]
# Statutory rates are fractions of the reference amount.
Rate = Annotated[Decimal, Field(ge=0, le=1)]
# Company methods express percentages as 0-100.
Percentage = Annotated[Decimal, Field(ge=0, le=100)]


class RuleConfigurationError(Exception):
    """Raised when a template's calculation rule cannot be used."""

    def __init__(self, method: str, reason: str, source: str | None = None):
        self.method = method
        self.reason = reason
        self.source = source
        msg = f"Invalid '{method}' rule"
        if source:
            msg += f" for {source}"
        super().__init__(f"{msg}: {reason}")


class _Rule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class Band(BaseModel):
    """One bracket band. ``max_amount=None`` means open-ended."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    min_amount: Money = Field(validation_alias=AliasChoices("min_amount", "min"))
    max_amount: Money | None = Field(
        default=None, validation_alias=AliasChoices("max_amount", "max")
    )
    rate: Rate = Decimal("0")
    amount: Money = Decimal("0")

    @model_validator(mode="after")
    def _check_bounds(self) -> Band:
        if self.max_amount is not None and self.max_amount < self.min_amount:
            raise ValueError(
                f"band maximum {self.max_amount} is below minimum {self.min_amount}"
            )
        return self

    def contains(self, value: Decimal) -> bool:
        return value >= self.min_amount and (
            self.max_amount is None or value <= self.max_amount
        )


def _validate_bands(bands: list[Band]) -> list[Band]:
    """Require at least one band, ordered and non-overlapping."""
    if not bands:
        raise ValueError("at least one band is required")
    ordered = sorted(bands, key=lambda b: b.min_amount)
    for lower, upper in zip(ordered, ordered[1:]):
        if lower.max_amount is None:
            raise ValueError("only the last band may be open-ended")
        if upper.min_amount < lower.max_amount:
            raise ValueError(
                f"bands overlap at {upper.min_amount} (previous band ends at {lower.max_amount})"
            )
    return ordered


# ===== Company item methods =====


class FixedAmountRule(_Rule):
    method: Literal[CalculationMethod.FIXED_AMOUNT] = CalculationMethod.FIXED_AMOUNT
    amount: Money = Field(
        default=Decimal("0"),
        validation_alias=AliasChoices("amount", "default_amount"),
    )


class PercentageOfSalaryRule(_Rule):
    method: Literal[CalculationMethod.PERCENTAGE_OF_SALARY] = (
        CalculationMethod.PERCENTAGE_OF_SALARY
    )
    percentage: Percentage


class PercentageOfBasicRule(_Rule):
    method: Literal[CalculationMethod.PERCENTAGE_OF_BASIC] = (
        CalculationMethod.PERCENTAGE_OF_BASIC
    )
    percentage: Percentage


class FormulaRule(_Rule):
    method: Literal[CalculationMethod.FORMULA] = CalculationMethod.FORMULA
    expression: str = Field(validation_alias=AliasChoices("expression", "formula"))


class ManualRule(_Rule):
    method: Literal[CalculationMethod.MANUAL] = CalculationMethod.MANUAL


# ===== Statutory methods =====


class ProgressiveBracketRule(_Rule):
    method: Literal[CalculationMethod.PROGRESSIVE_BRACKET] = (
        CalculationMethod.PROGRESSIVE_BRACKET
    )
    bands: list[Band] = Field(validation_alias=AliasChoices("bands", "brackets"))
    rebate: Money = Decimal("0")
    # Reference amount at or below which no tax is due.
    threshold: Money | None = None
    tax_year: str | None = None
    annualize: bool = True
    employer_rate: Rate = Decimal("0")

    @model_validator(mode="before")
    @classmethod
    def _primary_rebate(cls, data: Any) -> Any:
        """Accept rebates stored as ``{"rebates": {"primary": ...}}``.

        Only the primary rebate applies; age-based rebates are not modelled.
        """
        if not isinstance(data, dict) or "rebates" not in data:
            return data
        data = dict(data)
        rebates = data.pop("rebates")
        if "rebate" in data:
            raise ValueError("give either 'rebate' or 'rebates', not both")
        if not isinstance(rebates, dict) or "primary" not in rebates:
            raise ValueError("rebates must include a primary rebate")
        data["rebate"] = rebates["primary"]
        return data

    @field_validator("bands")
    @classmethod
    def _ordered_bands(cls, bands: list[Band]) -> list[Band]:
        return _validate_bands(bands)


class SalaryBracketRule(_Rule):
    method: Literal[CalculationMethod.SALARY_BRACKET] = CalculationMethod.SALARY_BRACKET
    bands: list[Band] = Field(validation_alias=AliasChoices("bands", "brackets"))
    employer_rate: Rate = Decimal("0")

    @field_validator("bands")
    @classmethod
    def _ordered_bands(cls, bands: list[Band]) -> list[Band]:
        return _validate_bands(bands)


class FlatAmountRule(_Rule):
    method: Literal[CalculationMethod.FLAT_AMOUNT] = CalculationMethod.FLAT_AMOUNT
    amount: Money
    minimum_salary: Money | None = None


class PercentageRule(_Rule):
    method: Literal[CalculationMethod.PERCENTAGE] = CalculationMethod.PERCENTAGE
    employee_rate: Rate = Decimal("0")
    employer_rate: Rate = Decimal("0")
    maximum_salary: Money | None = None


_RULE_MODELS: tuple[type[_Rule], ...] = (
    FixedAmountRule,
    PercentageOfSalaryRule,
    PercentageOfBasicRule,
    FormulaRule,
    ManualRule,
    ProgressiveBracketRule,
    SalaryBracketRule,
    FlatAmountRule,
    PercentageRule,
)

AmountRule = Annotated[
    Union[
        FixedAmountRule,
        PercentageOfSalaryRule,
        PercentageOfBasicRule,
        FormulaRule,
        ManualRule,
        ProgressiveBracketRule,
        SalaryBracketRule,
        FlatAmountRule,
        PercentageRule,
    ],
    Field(discriminator="method"),
]

_RULE_ADAPTER: TypeAdapter[Any] = TypeAdapter(AmountRule)

# Methods whose amount scales with the fraction of the period worked.
PRORATED_METHODS = frozenset(
    {
        CalculationMethod.FIXED_AMOUNT,
        CalculationMethod.PERCENTAGE_OF_BASIC,
        CalculationMethod.FORMULA,
    }
)

# Methods a garnishment order may use.
GARNISHMENT_METHODS = frozenset(
    {
        CalculationMethod.FIXED_AMOUNT,
        CalculationMethod.PERCENTAGE_OF_SALARY,
        CalculationMethod.PERCENTAGE_OF_BASIC,
        CalculationMethod.FORMULA,
        CalculationMethod.MANUAL,
    }
)


def _parameter_names(model: type[_Rule]) -> frozenset[str]:
    names: set[str] = set()
    for name, info in model.model_fields.items():
        if name == "method":
            continue
        names.add(name)
        alias = info.validation_alias
        if isinstance(alias, AliasChoices):
            names.update(choice for choice in alias.choices if isinstance(choice, str))
        elif isinstance(alias, str):
            names.add(alias)
    return frozenset(names)


_ACCEPTED_PARAMETERS = {
    model.model_fields["method"].default.value: _parameter_names(model)
    for model in _RULE_MODELS
}


def accepted_parameters(method: str) -> frozenset[str]:
    """Parameter keys the rule for ``method`` accepts (empty if unknown)."""
    return _ACCEPTED_PARAMETERS.get(str(getattr(method, "value", method)), frozenset())


def parse_rule(
    method: str, params: dict[str, Any] | None, source: str | None = None
) -> AmountRule:
    """Validate stored parameters into the rule model for ``method``.

    Raises RuleConfigurationError for an unknown method or malformed
    parameters.
    """
    try:
        method_enum = CalculationMethod(method)
    except ValueError:
        raise RuleConfigurationError(
            str(method), "unknown calculation method", source
        ) from None

    payload = dict(params or {})
    payload["method"] = method_enum
    try:
        return _RULE_ADAPTER.validate_python(payload)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'rule'}: {err['msg']}"
            for err in e.errors()
        )
        raise RuleConfigurationError(method_enum.value, problems, source) from e
