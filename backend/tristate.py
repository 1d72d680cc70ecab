# backend/tristate.py
from __future__ import annotations

from enum import Enum


class Tri(Enum):
    """
    Outcome of one probe stage.

    A stage that never ran is NOT_ATTEMPTED; there is no way to express
    "not attempted but true".
    """

    NOT_ATTEMPTED = "-"
    FALSE = "f"
    TRUE = "t"

    @classmethod
    def of(cls, ok: bool) -> "Tri":
        return cls.TRUE if ok else cls.FALSE

    @property
    def attempted(self) -> bool:
        return self is not Tri.NOT_ATTEMPTED

    def __bool__(self) -> bool:
        return self is Tri.TRUE

    def __str__(self) -> str:
        return self.value
