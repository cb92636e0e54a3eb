"""Formatting options and check-digit algorithms for generated numbers."""
import re
from typing import Optional, Literal
from pydantic import BaseModel, Field, field_validator, model_validator


_INT_CONVERSION = re.compile(r"%[-+ 0#]*(\d*)[diu]")
MAX_WIDTH = 32


def luhn_check_digit(value: int) -> str:
    """Luhn (mod 10) check digit for the decimal digits of *value*."""
    if value < 0:
        raise ValueError("check digits are only defined for non-negative values")
    total = 0
    for i, ch in enumerate(reversed(str(value))):
        d = int(ch)
        if i % 2 == 0:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return str((10 - total % 10) % 10)


def mod11_check_digit(value: int) -> str:
    """Weighted mod 11 check digit (weights 2..7 from the right, 10 -> 'X')."""
    if value < 0:
        raise ValueError("check digits are only defined for non-negative values")
    total = 0
    for i, ch in enumerate(reversed(str(value))):
        total += int(ch) * (2 + i % 6)
    remainder = 11 - total % 11
    if remainder == 11:
        return "0"
    if remainder == 10:
        return "X"
    return str(remainder)


CHECKSUM_ALGORITHMS = {
    "luhn": luhn_check_digit,
    "mod11": mod11_check_digit,
}


class FormatOptions(BaseModel):
    """How a raw counter value is rendered.

    ``template`` is a printf-style pattern with exactly one integer
    conversion (``"EP-%06d"``).  Without a template the value is zero-padded
    to ``width``.  The check digit is computed on the raw value and placed
    right after the formatted number, before ``suffix``.
    """

    template: Optional[str] = None
    width: int = Field(default=0, ge=0, le=MAX_WIDTH)
    prefix: str = ""
    suffix: str = ""
    checksum: Optional[Literal["luhn", "mod11"]] = None

    @field_validator("template")
    @classmethod
    def template_has_one_integer_conversion(cls, v):
        if v is None:
            return v
        stripped = v.replace("%%", "")
        match = _INT_CONVERSION.search(stripped)
        if stripped.count("%") != 1 or not match:
            raise ValueError("template must contain exactly one integer conversion such as %d or %06d")
        if match.group(1) and int(match.group(1)) > MAX_WIDTH:
            raise ValueError(f"template field width must not exceed {MAX_WIDTH}")
        return v

    @model_validator(mode="after")
    def renders_a_sample_value(self):
        # format() runs after the increment commits
        try:
            self.format(1)
        except (TypeError, ValueError, OverflowError) as exc:
            raise ValueError(f"format options cannot render a number: {exc}") from exc
        return self

    def format(self, value: int) -> str:
        if self.template:
            body = self.template % value
        else:
            body = str(value).zfill(self.width)
        if self.checksum:
            body += CHECKSUM_ALGORITHMS[self.checksum](value)
        return f"{self.prefix}{body}{self.suffix}"
