"""Epoch:version-release parsing, ordering, and capability matching."""

import re
from dataclasses import dataclass
from functools import lru_cache, total_ordering

_SEGMENT_RE = re.compile(r"~|[0-9]+|[a-zA-Z]+")
_CAPABILITY_RE = re.compile(r"^\s*(?P<name>[^\s<>=]+)\s*(?:(?P<op><=|>=|==|=|<|>)\s*(?P<evr>\S+))?\s*$")

# comparison flags, rpm style
_LT = 1
_GT = 2
_EQ = 4
_OP_FLAGS = {"<": _LT, ">": _GT, "=": _EQ, "==": _EQ, "<=": _LT | _EQ, ">=": _GT | _EQ}


def compare_versions(left: str, right: str) -> int:
    """Compare two version (or release) strings segment by segment.

    Numeric segments compare numerically and alphabetic segments lexically; a
    numeric segment is newer than an alphabetic one and ``~`` sorts before
    anything. A missing segment sorts below a numeric one but above an
    alphabetic one or ``~``, so ``1.2.9`` is newer than ``1.2.9a``.

    Returns:
        -1, 0 or 1 like a classic ``cmp``

    Examples:
        >>> compare_versions("1.2.10", "1.2.9")
        1
        >>> compare_versions("1.2.9", "1.2.9a")
        1
    """
    if left == right:
        return 0

    left_segments = _SEGMENT_RE.findall(left)
    right_segments = _SEGMENT_RE.findall(right)

    for one, two in zip(left_segments, right_segments):
        if one == two:
            continue
        if one == "~":
            return -1
        if two == "~":
            return 1
        one_numeric, two_numeric = one.isdigit(), two.isdigit()
        if one_numeric and two_numeric:
            diff = int(one) - int(two)
            if diff:
                return 1 if diff > 0 else -1
            continue
        if one_numeric != two_numeric:
            return 1 if one_numeric else -1
        return 1 if one > two else -1

    common = min(len(left_segments), len(right_segments))
    if len(left_segments) > common:
        return 1 if left_segments[common].isdigit() else -1
    if len(right_segments) > common:
        return -1 if right_segments[common].isdigit() else 1
    return 0


@total_ordering
@dataclass(frozen=True)
class EVR:
    """An epoch:version-release triple."""

    epoch: int = 0
    version: str = ""
    release: str = ""

    @classmethod
    def parse(cls, text: str) -> "EVR":
        """Parse ``[epoch:]version[-release]``."""
        epoch = 0
        if ":" in text:
            epoch_str, text = text.split(":", 1)
            epoch = int(epoch_str) if epoch_str else 0
        version, _, release = text.rpartition("-") if "-" in text else (text, "", "")
        return cls(epoch=epoch, version=version, release=release)

    def compare(self, other: "EVR") -> int:
        """Compare two EVRs; an empty release on either side matches any release."""
        if self.epoch != other.epoch:
            return 1 if self.epoch > other.epoch else -1
        result = compare_versions(self.version, other.version)
        if result or not self.release or not other.release:
            return result
        return compare_versions(self.release, other.release)

    def __lt__(self, other: "EVR") -> bool:
        return self.compare(other) < 0

    def __str__(self) -> str:
        text = f"{self.epoch}:{self.version}" if self.epoch else self.version
        return f"{text}-{self.release}" if self.release else text


@dataclass(frozen=True)
class Capability:
    """A named capability with an optional version constraint, e.g. ``libfoo >= 1.2``."""

    name: str
    op: str | None = None
    evr: EVR | None = None

    def matches(self, other: "Capability") -> bool:
        """Return True if the two capability ranges overlap.

        An unversioned capability on either side matches any version.
        """
        if self.name != other.name:
            return False
        if self.evr is None or other.evr is None or self.op is None or other.op is None:
            return True

        mine, theirs = _OP_FLAGS[self.op], _OP_FLAGS[other.op]
        sense = self.evr.compare(other.evr)
        if sense < 0:
            return bool(mine & _GT or theirs & _LT)
        if sense > 0:
            return bool(mine & _LT or theirs & _GT)
        return bool(mine & theirs & (_EQ | _LT | _GT))

    def __str__(self) -> str:
        if self.op is None or self.evr is None:
            return self.name
        return f"{self.name} {self.op} {self.evr}"


@lru_cache(maxsize=65536)
def parse_capability(text: str) -> Capability:
    """Parse a relation entry such as ``libfoo``, ``libfoo >= 1.0`` or ``libfoo = 2:1.0-3``.

    Raises:
        ValueError: If the text is not a valid capability
    """
    match = _CAPABILITY_RE.match(text)
    if match is None:
        raise ValueError(f"Invalid capability: {text!r}")
    name, op, evr = match.group("name", "op", "evr")
    if op is None:
        return Capability(name=name)
    return Capability(name=name, op="=" if op == "==" else op, evr=EVR.parse(evr))


def split_relations(value: str | None) -> tuple[str, ...]:
    """Split a comma and/or newline separated relation field into entries."""
    if not value:
        return ()
    entries = (entry.strip() for line in value.splitlines() for entry in line.split(","))
    return tuple(entry for entry in entries if entry)
