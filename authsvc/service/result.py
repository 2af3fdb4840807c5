from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, Optional, TypeVar, Union

from authsvc.service.errors import AuthError, AuthErrorCode

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Failure:
    code: AuthErrorCode
    message: str
    detail: Optional[dict] = field(default=None)

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self):
        raise AuthError(self.code, self.message, detail=self.detail)


Outcome = Union[Ok[T], Failure]


def fail(code: AuthErrorCode, message: str, **detail) -> Failure:
    return Failure(code, message, detail or None)
