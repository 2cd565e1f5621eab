"""
Statuses, methods and delay types are stored as UPPERCASE VARCHAR columns,
never as database enums. These helpers move values between the ``str``
enums the services compare against and whatever callers hand in.
"""

from enum import Enum
from typing import Any, Optional, Type, TypeVar

T = TypeVar('T', bound=Enum)


def get_enum_value(value: Any) -> Optional[str]:
    """``PayoutMethod.PAYPAL`` and ``"PAYPAL"`` both give ``"PAYPAL"``."""
    if value is None:
        return None
    return value.value if isinstance(value, Enum) else str(value)


def to_enum(value: Any, enum_class: Type[T]) -> Optional[T]:
    """Case-insensitive lookup; None when ``value`` is not a member."""
    if value is None or isinstance(value, enum_class):
        return value
    try:
        return enum_class(str(value).strip().upper())
    except ValueError:
        return None


def enum_comment(enum_class: Type[Enum]) -> str:
    """Column comment listing the allowed values, e.g. ``'PENDING, COMPLETED, FAILED, CANCELLED'``."""
    return ", ".join(member.value for member in enum_class)
