"""Lifecycle statuses with flag metadata.

Batches and variations share one lifecycle shape: they run, then land in a
terminal status they never leave. Members declare that shape with flags:

    class VariationStatus(LifecycleStatusEnum):
        PROCESSING = Status("PROCESSING", Flags.ACTIVE)
        COMPLETED = Status("COMPLETED", Flags.FINAL)
        FAILED = Status("FAILED", Flags.FINAL | Flags.FAILURE)

The enum value is the wire string; flags are available through `.meta`.
"""

from dataclasses import dataclass
from enum import IntFlag, StrEnum, auto
from typing import Any


class Flags(IntFlag):
    """Lifecycle metadata flags.

    Flags:
        ACTIVE  - Job is still running on the external worker
        FINAL   - Terminal state, the record may never leave it
        FAILURE - Terminal state that represents a failed job (requires FINAL)
    """

    NONE = 0
    ACTIVE = auto()
    FINAL = auto()
    FAILURE = auto()


# trigger flag -> (flags that must accompany it, flags that may not)
FLAG_RULES: dict[Flags, tuple[Flags, Flags]] = {
    Flags.FAILURE: (Flags.FINAL, Flags.NONE),
    Flags.FINAL: (Flags.NONE, Flags.ACTIVE),
}


def _names(flags: Flags) -> str:
    return " and ".join(f.name or str(f) for f in Flags if f and f in flags)


def validate_flags(value: Flags) -> None:
    """Raise ValueError if the combination breaks a rule in FLAG_RULES."""
    for trigger, (required, forbidden) in FLAG_RULES.items():
        if trigger not in value:
            continue
        problems: list[str] = []
        if missing := required & ~value:
            problems.append(f"{_names(missing)} must be present")
        if clash := value & forbidden:
            problems.append(f"{_names(clash)} cannot be present")
        if problems:
            raise ValueError(f"When {_names(trigger)}: " + " and ".join(problems))


@dataclass(frozen=True, slots=True)
class Status:
    """Member declaration: wire value plus flags."""

    value: str
    flags: Flags = Flags.NONE

    def __post_init__(self) -> None:
        validate_flags(self.flags)

    @property
    def is_active(self) -> bool:
        return Flags.ACTIVE in self.flags

    @property
    def is_final(self) -> bool:
        return Flags.FINAL in self.flags

    @property
    def is_failure(self) -> bool:
        return Flags.FAILURE in self.flags


class LifecycleStatusEnum(StrEnum):
    """StrEnum whose members are declared with `Status` and keep it as `.meta`."""

    _meta: Status

    def __new__(cls, status: Status | str) -> "LifecycleStatusEnum":
        meta = status if isinstance(status, Status) else Status(status)
        obj = str.__new__(cls, meta.value)
        obj._value_ = meta.value
        obj._meta = meta
        return obj

    @property
    def meta(self) -> Status:
        return self._meta

    @property
    def is_terminal(self) -> bool:
        return self._meta.is_final

    @classmethod
    def _with(cls, predicate: Any) -> "frozenset[Any]":
        return frozenset(s for s in cls if predicate(s.meta))

    @classmethod
    def active_states(cls) -> "frozenset[Any]":
        """States where the job is still running."""
        return cls._with(lambda m: m.is_active)

    @classmethod
    def final_states(cls) -> "frozenset[Any]":
        """Terminal states; a record never leaves them."""
        return cls._with(lambda m: m.is_final)

    @classmethod
    def failure_states(cls) -> "frozenset[Any]":
        return cls._with(lambda m: m.is_failure)
