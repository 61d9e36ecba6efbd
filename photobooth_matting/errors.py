from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class MattingError(Exception):
    """Base class for every failure raised inside the matting core."""


class InvalidInput(MattingError):
    pass


class InferenceUnavailable(MattingError):
    pass


class InferenceShapeMismatch(MattingError):
    pass


class PostprocessFailure(MattingError):
    pass


class RemoteFallbackFailure(MattingError):
    pass


class Cancelled(MattingError):
    pass


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    error: MattingError

    @property
    def reason(self) -> str:
        return f"{type(self.error).__name__}: {self.error}"


Result = Union[Ok[T], Err]
