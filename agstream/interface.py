from typing import Any, Callable, Protocol, TypeGuard

from msgspec import UNSET, Struct, UnsetType
from msgspec.structs import asdict
from typing_extensions import dataclass_transform


@dataclass_transform(frozen_default=True)
class Record(Struct, frozen=True, kw_only=True):
    def asdict(self) -> dict[str, Any]:
        return asdict(self)


type Unset[T] = UnsetType | T


def is_set[T](value: Unset[T]) -> TypeGuard[T]:
    return value is not UNSET


class ILogger(Protocol):
    def info(self, msg: str, /, **kwargs: Any) -> None: ...

    def success(self, msg: str, /, **kwargs: Any) -> None: ...

    def warning(self, msg: str, /, **kwargs: Any) -> None: ...

    def exception(self, msg: str, /, **kwargs: Any) -> None: ...


type ITimer = Callable[[], float]
