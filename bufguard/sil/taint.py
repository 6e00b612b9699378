"""
Taint lattice and per-program-point taint environments.

    Untainted < Unknown < Tainted

Every value carries the provenance chain that produced it: the ordered
steps from the originating source (or the indirect call / iteration limit
that made it Unknown) to the current program point.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Iterator, Optional, Tuple

from .types import Location


class TaintLevel(IntEnum):
    """Lattice levels, ordered"""
    UNTAINTED = 0
    UNKNOWN = 1
    TAINTED = 2

    def __str__(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class TaintStep:
    """One hop of a taint chain"""
    location: Location
    description: str

    def __str__(self) -> str:
        return f"{self.location}: {self.description}"

    def to_dict(self) -> Dict:
        return {
            "file": self.location.file,
            "line": self.location.line,
            "column": self.location.column,
            "description": self.description,
        }


@dataclass(frozen=True)
class TaintValue:
    """A lattice level plus the chain that established it"""
    level: TaintLevel = TaintLevel.UNTAINTED
    chain: Tuple[TaintStep, ...] = ()

    def __str__(self) -> str:
        return str(self.level)

    @property
    def is_tainted(self) -> bool:
        return self.level == TaintLevel.TAINTED

    @property
    def is_untainted(self) -> bool:
        return self.level == TaintLevel.UNTAINTED

    def join(self, other: 'TaintValue') -> 'TaintValue':
        """Least upper bound; on equal levels the existing chain is kept"""
        if other.level > self.level:
            return other
        return self

    def extend(self, step: TaintStep) -> 'TaintValue':
        """Append a step to the chain of a (possibly) tainted value"""
        if self.level == TaintLevel.UNTAINTED or step in self.chain:
            return self
        return TaintValue(self.level, self.chain + (step,))

    @classmethod
    def tainted(cls, step: TaintStep) -> 'TaintValue':
        return cls(TaintLevel.TAINTED, (step,))

    @classmethod
    def unknown(cls, step: TaintStep) -> 'TaintValue':
        return cls(TaintLevel.UNKNOWN, (step,))


UNTAINTED = TaintValue()


class TaintEnv:
    """
    Taint of every access path at one program point.

    Paths that are absent are Untainted. Reading a path joins the path
    itself, every prefix of it (a tainted struct taints its fields) and
    every extension of it (a tainted field taints the whole struct).
    """

    def __init__(self, values: Optional[Dict[str, TaintValue]] = None):
        self._values: Dict[str, TaintValue] = {}
        if values:
            for path, value in values.items():
                if not value.is_untainted:
                    self._values[path] = value

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        items = ", ".join(f"{p}: {v}" for p, v in sorted(self._values.items()))
        return f"TaintEnv({{{items}}})"

    def copy(self) -> 'TaintEnv':
        env = TaintEnv()
        env._values = dict(self._values)
        return env

    def items(self):
        return self._values.items()

    def get(self, path: str) -> TaintValue:
        """Value stored exactly at `path`"""
        return self._values.get(path, UNTAINTED)

    def read(self, path: str) -> TaintValue:
        result = self.get(path)
        parts = path.split(".")
        for i in range(1, len(parts)):
            result = result.join(self.get(".".join(parts[:i])))
        prefix = path + "."
        for other, value in self._values.items():
            if other.startswith(prefix):
                result = result.join(value)
        return result

    def assign(self, path: str, value: TaintValue) -> None:
        """Strong update: the path and everything below it is overwritten"""
        prefix = path + "."
        for other in [p for p in self._values if p.startswith(prefix)]:
            del self._values[other]
        if value.is_untainted:
            self._values.pop(path, None)
        else:
            self._values[path] = value

    def store(self, path: str, value: TaintValue) -> None:
        """Weak update: join into the existing value"""
        joined = self.get(path).join(value)
        if not joined.is_untainted:
            self._values[path] = joined

    def join(self, other: 'TaintEnv') -> 'TaintEnv':
        result = self.copy()
        for path, value in other._values.items():
            result._values[path] = result.get(path).join(value)
        return result

    def levels(self) -> Dict[str, TaintLevel]:
        """Levels only; chains are not part of convergence"""
        return {path: value.level for path, value in self._values.items()}

    def leq(self, other: 'TaintEnv') -> bool:
        """True when every path here is at most as tainted as in `other`"""
        for path, value in self._values.items():
            if value.level > other.get(path).level:
                return False
        return True

    def widen(self, step: TaintStep, paths=()) -> 'TaintEnv':
        """Raise every known path (and `paths`) to at least Unknown"""
        floor = TaintValue.unknown(step)
        result = self.copy()
        for path in list(result._values) + list(paths):
            result._values[path] = result.get(path).join(floor)
        return result
