"""Explicit partial updates for ORM rows.

A :class:`Patch` maps a field path to either a concrete value or
:data:`DELETE_FIELD`. It is validated as a whole and then applied to a row
inside the caller's transaction, so either every field lands or none does.
"""

from typing import Any, Iterator, Mapping

from clubbilling.core.errors import ValidationError

ILLEGAL_PATH_CHARS = (".", "/")


class _DeleteField:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DELETE_FIELD"

    def __bool__(self) -> bool:
        return False


DELETE_FIELD = _DeleteField()


class Patch(Mapping[str, Any]):

    def __init__(self, fields: Mapping[str, Any] | None = None, **kwargs: Any):
        self._fields: dict[str, Any] = dict(fields or {})
        self._fields.update(kwargs)

    def __getitem__(self, path: str) -> Any:
        return self._fields[path]

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __repr__(self) -> str:
        return f"Patch({self._fields!r})"

    def merge(self, other: Mapping[str, Any]) -> "Patch":
        return Patch({**self._fields, **dict(other)})

    def validate(self) -> "Patch":
        for path in self._fields:
            if not isinstance(path, str) or not path.strip():
                raise ValidationError("Invalid field path in update")
            if any(ch in path for ch in ILLEGAL_PATH_CHARS):
                raise ValidationError(f"Invalid field path in update: {path}")
        return self

    def apply_to(self, row: Any) -> Any:
        self.validate()
        model = type(row)
        unknown = [path for path in self._fields if not hasattr(model, path)]
        if unknown:
            raise ValidationError(f"Unknown field {', '.join(unknown)} on {model.__name__}")
        for path, value in self._fields.items():
            setattr(row, path, None if value is DELETE_FIELD else value)
        return row
