from dataclasses import dataclass, field
from typing import Any, Dict, Generic, TypeVar, Union

from callsync.errors import ErrorCode

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Failure:
    code: ErrorCode
    message: str
    context: Dict[str, Any] = field(default_factory=dict)


Result = Union[Ok[T], Failure]
