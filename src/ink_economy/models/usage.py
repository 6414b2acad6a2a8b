from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..errors import UpstreamError


def _get_nested(data: Mapping[str, Any], key_path: str) -> Optional[Any]:
    """Get a value using dot-notation key path, e.g. 'usage.total_tokens'."""
    current: Any = data
    for key in key_path.strip().split("."):
        if not isinstance(current, Mapping) or key not in current:
            return None
        current = current[key]
    return current


# (input, output, total) key paths understood in upstream response bodies.
_USAGE_LAYOUTS: tuple[tuple[str, str, str], ...] = (
    (
        "usageMetadata.promptTokenCount",
        "usageMetadata.candidatesTokenCount",
        "usageMetadata.totalTokenCount",
    ),
    ("usage.prompt_tokens", "usage.completion_tokens", "usage.total_tokens"),
    ("usage.inputTokens", "usage.outputTokens", "usage.totalTokens"),
)


class UsageReport(BaseModel):
    """Token usage reported by the upstream inference endpoint."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    input_tokens: NonNegativeInt
    output_tokens: NonNegativeInt
    total_tokens: Optional[NonNegativeInt] = None

    @property
    def effective_total(self) -> int:
        if self.total_tokens is not None:
            return self.total_tokens
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_response(cls, data: Any) -> "UsageReport":
        """
        Extract usage from an upstream response body. Raises UpstreamError
        when no known layout yields usable integer counts.
        """
        if not isinstance(data, Mapping):
            raise UpstreamError("upstream response is not a JSON object")

        for input_path, output_path, total_path in _USAGE_LAYOUTS:
            raw_in = _get_nested(data, input_path)
            raw_out = _get_nested(data, output_path)
            if raw_in is None and raw_out is None:
                continue
            try:
                return cls(
                    input_tokens=raw_in or 0,
                    output_tokens=raw_out or 0,
                    total_tokens=_get_nested(data, total_path),
                )
            except PydanticValidationError as exc:
                # Negative, fractional or non-numeric counts all land here.
                raise UpstreamError(
                    "upstream usage report is invalid",
                    details={
                        "layout": input_path.split(".")[0],
                        "errors": exc.errors(include_url=False, include_context=False),
                    },
                ) from exc

        raise UpstreamError("upstream response carries no usage report")


class CostBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    input_tokens: int
    output_tokens: int
    usd: Decimal
    local: Decimal
    rounded: int
    fee: int
    charge: int = Field(description="rounded + fee, in credits")
