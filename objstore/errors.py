"""Aggregation of several errors into a single exception."""

from __future__ import annotations

from typing import Iterable, Iterator, Optional


class NonNilMultiError(Exception):
    """An exception that carries one or more underlying errors."""

    def __init__(self, errors: Iterable[BaseException]) -> None:
        self.errors: list[BaseException] = list(errors)
        super().__init__(*self.errors)

    def __str__(self) -> str:
        joined = "; ".join(str(err) for err in self.errors)
        if len(self.errors) > 1:
            return f"{len(self.errors)} errors: {joined}"
        return joined

    def __iter__(self) -> Iterator[BaseException]:
        return iter(self.errors)

    def __len__(self) -> int:
        return len(self.errors)


class MultiError(list):
    """A growable list of errors that can be turned into one exception."""

    def add(self, err: Optional[BaseException]) -> None:
        """Append ``err``; ``None`` is ignored and nested multi-errors are flattened."""
        if err is None:
            return
        if isinstance(err, NonNilMultiError):
            self.extend(err.errors)
        else:
            self.append(err)

    def err(self) -> Optional[NonNilMultiError]:
        """Return the collected errors as one exception, or ``None`` if there are none."""
        if not self:
            return None
        return NonNilMultiError(self)