"""Module stream index: spec matching, enable/disable state and modular filtering."""

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import NamedTuple, Protocol

from pkgresolve.errors import ErrorKind, ModuleError
from pkgresolve.models import ModuleChange, ModuleStream, PackageRecord
from pkgresolve.universe import PackageUniverse

logger = logging.getLogger(__name__)

ENABLE = "enable"
DISABLE = "disable"
RESET = "reset"


class StreamSource(Protocol):
    def module_streams(self) -> list[ModuleStream]: ...


class ModuleSpec(NamedTuple):
    """A parsed ``name[:stream][:version][:context][:arch][/profile]`` pattern; None fields match anything."""

    name: str
    stream: str | None = None
    version: str | None = None
    context: str | None = None
    arch: str | None = None
    profile: str | None = None

    @classmethod
    def parse(cls, pattern: str) -> "ModuleSpec":
        """
        Examples:
            >>> ModuleSpec.parse("nodejs:18/minimal")
            ModuleSpec(name='nodejs', stream='18', version=None, context=None, arch=None, profile='minimal')
        """
        spec, _, profile = pattern.strip().partition("/")
        fields = [part or None for part in spec.split(":")]
        if not fields[0] or len(fields) > 5:
            raise ValueError(f"Invalid module spec: {pattern!r}")
        fields += [None] * (5 - len(fields))
        return cls(*fields, profile=profile or None)

    def matches(self, stream: ModuleStream) -> bool:
        checks = (
            (self.name, stream.name),
            (self.stream, stream.stream),
            (self.version, str(stream.version)),
            (self.context, stream.context),
            (self.arch, stream.arch),
        )
        if not all(pattern is None or fnmatchcase(value, pattern) for pattern, value in checks):
            return False
        return self.profile is None or any(fnmatchcase(name, self.profile) for name in stream.profiles)


def normalize_nevra(text: str) -> str:
    """Add the implicit ``0:`` epoch to a ``name-version-release.arch`` string."""
    if ":" in text:
        return text
    rest, _, arch = text.rpartition(".")
    name_version, _, release = rest.rpartition("-")
    name, _, version = name_version.rpartition("-")
    if not (name and version and release and arch):
        return text
    return f"{name}-0:{version}-{release}.{arch}"


@dataclass
class _EnableState:
    enabled: dict[str, str] = field(default_factory=dict)
    disabled: set[str] = field(default_factory=set)

    def copy(self) -> "_EnableState":
        return _EnableState(enabled=dict(self.enabled), disabled=set(self.disabled))


class ModuleIndex:
    """Derived view over the module streams registered in a universe.

    At most one stream per module name is enabled. Packages listed as a
    stream's artifacts are only eligible while that stream is active,
    meaning enabled, or the default while the module is neither enabled nor disabled.
    """

    def __init__(self, source: PackageUniverse | StreamSource, state: _EnableState | None = None):
        self._source = source
        self._state = state or _EnableState()
        self.generation = 0

    def streams(self, name: str | None = None) -> list[ModuleStream]:
        """Known streams, optionally for one module, in a stable order."""
        streams = [s for s in self._source.module_streams() if name is None or s.name == name]
        return sorted(streams, key=lambda s: (s.name, s.stream, s.version, s.context, s.arch))

    def module_names(self) -> list[str]:
        return sorted({stream.name for stream in self._source.module_streams()})

    def default_stream(self, name: str) -> str | None:
        defaults = sorted({stream.stream for stream in self.streams(name) if stream.default})
        if len(defaults) > 1:
            logger.warning(f"Module {name} has several default streams {defaults}, using {defaults[0]}")
        return defaults[0] if defaults else None

    def enabled_stream(self, name: str) -> str | None:
        return self._state.enabled.get(name)

    def is_disabled(self, name: str) -> bool:
        return name in self._state.disabled

    def active_stream(self, name: str) -> str | None:
        """The stream whose packages are eligible: enabled, else default unless disabled."""
        if name in self._state.enabled:
            return self._state.enabled[name]
        if name in self._state.disabled:
            return None
        return self.default_stream(name)

    def stream_state(self, stream: ModuleStream) -> str:
        """``enabled``, ``disabled``, ``default`` or empty, for listings."""
        if self._state.enabled.get(stream.name) == stream.stream:
            return "enabled"
        if stream.name in self._state.disabled:
            return "disabled"
        if stream.default:
            return "default"
        return ""

    def resolve_spec(self, pattern: str | ModuleSpec) -> list[ModuleStream]:
        """Streams matching a module spec.

        Fields may be shell globs. Without an explicit stream, a module's
        enabled stream (or failing that its default stream) restricts the result.
        """
        spec = ModuleSpec.parse(pattern) if isinstance(pattern, str) else pattern
        matched = [stream for stream in self.streams() if spec.matches(stream)]
        if spec.stream is not None:
            return matched

        by_name: defaultdict[str, list[ModuleStream]] = defaultdict(list)
        for stream in matched:
            by_name[stream.name].append(stream)
        result = []
        for name, candidates in by_name.items():
            preferred = self.enabled_stream(name) or self.default_stream(name)
            restricted = [stream for stream in candidates if stream.stream == preferred]
            result.extend(restricted or candidates)
        return result

    def _check_stream(self, name: str, stream: str) -> None:
        if not any(candidate.stream == stream for candidate in self.streams(name)):
            known = sorted({candidate.stream for candidate in self.streams(name)})
            raise ModuleError(
                ErrorKind.NO_SUCH_STREAM,
                f"module {name} has no stream {stream!r}" + (f", known streams: {', '.join(known)}" if known else ""),
                module=name,
                stream=stream,
            )

    def _enable_into(self, state: _EnableState, name: str, stream: str, changes: list[ModuleChange]) -> None:
        self._check_stream(name, stream)
        current = state.enabled.get(name)
        if current == stream:
            return
        if current is not None:
            raise ModuleError(
                ErrorKind.STREAM_CONFLICT,
                f"cannot enable {name}:{stream}, stream {current} is already enabled",
                module=name,
                stream=stream,
                enabled=current,
            )
        state.enabled[name] = stream
        state.disabled.discard(name)
        changes.append(ModuleChange(name=name, action=ENABLE, stream=stream))

        # pull in module dependencies; an empty stream means the enabled or default one
        for module_stream in self.streams(name):
            if module_stream.stream != stream:
                continue
            for required, required_stream in module_stream.required_streams():
                required_stream = required_stream or state.enabled.get(required) or self.default_stream(required)
                if required_stream is None:
                    raise ModuleError(
                        ErrorKind.NO_SUCH_STREAM,
                        f"{name}:{stream} requires module {required}, which has no enabled or default stream",
                        module=required,
                    )
                self._enable_into(state, required, required_stream, changes)

    def _commit(self, state: _EnableState, changes: list[ModuleChange]) -> list[ModuleChange]:
        self._state = state
        if changes:
            self.generation += 1
            for change in changes:
                logger.debug(f"Module {change.name}: {change.action} {change.stream or ''}".rstrip())
        return changes

    def enable(self, name: str, stream: str) -> list[ModuleChange]:
        """Enable a stream and the streams it requires.

        Raises:
            ModuleError: NO_SUCH_STREAM for an unknown stream, STREAM_CONFLICT if another stream is enabled
        """
        state = self._state.copy()
        changes: list[ModuleChange] = []
        self._enable_into(state, name, stream, changes)
        return self._commit(state, changes)

    def disable(self, name: str) -> list[ModuleChange]:
        """Disable a module: none of its streams, default included, stay active."""
        if not self.streams(name):
            raise ModuleError(ErrorKind.NO_SUCH_STREAM, f"no module named {name}", module=name)
        if name in self._state.disabled:
            return []
        state = self._state.copy()
        state.enabled.pop(name, None)
        state.disabled.add(name)
        return self._commit(state, [ModuleChange(name=name, action=DISABLE)])

    def reset(self, name: str) -> list[ModuleChange]:
        """Forget any enable/disable decision for a module."""
        if name not in self._state.enabled and name not in self._state.disabled:
            return []
        state = self._state.copy()
        state.enabled.pop(name, None)
        state.disabled.discard(name)
        return self._commit(state, [ModuleChange(name=name, action=RESET)])

    def switch(self, name: str, stream: str) -> list[ModuleChange]:
        """Disable whatever is enabled and enable ``stream``, all or nothing."""
        self._check_stream(name, stream)
        if self._state.enabled.get(name) == stream:
            return []
        state = self._state.copy()
        changes = []
        if name in state.enabled:
            del state.enabled[name]
            state.disabled.add(name)
            changes.append(ModuleChange(name=name, action=DISABLE))
        self._enable_into(state, name, stream, changes)
        return self._commit(state, changes)

    def snapshot(self) -> "ModuleIndex":
        """An independent copy over the current streams; changes to it never reach this index."""
        source = self._source.view() if isinstance(self._source, PackageUniverse) else self._source
        copy = ModuleIndex(source, self._state.copy())
        copy.generation = self.generation
        return copy

    def apply(self, changes: Iterable[ModuleChange]) -> None:
        """Commit module changes from a resolved transaction, all or nothing."""
        state = self._state.copy()
        applied: list[ModuleChange] = []
        for change in changes:
            if change.action == ENABLE:
                if change.stream is None:
                    raise ValueError(f"enable change for {change.name} has no stream")
                if state.enabled.get(change.name) not in (None, change.stream):
                    raise ModuleError(
                        ErrorKind.STREAM_CONFLICT,
                        f"cannot enable {change.name}:{change.stream}, "
                        f"stream {state.enabled[change.name]} is already enabled",
                        module=change.name,
                    )
                state.enabled[change.name] = change.stream
                state.disabled.discard(change.name)
            elif change.action == DISABLE:
                state.enabled.pop(change.name, None)
                state.disabled.add(change.name)
            elif change.action == RESET:
                state.enabled.pop(change.name, None)
                state.disabled.discard(change.name)
            else:
                raise ValueError(f"Unknown module change {change.action!r}")
            applied.append(change)
        self._commit(state, applied)

    def eligibility(self) -> Callable[[PackageRecord], bool]:
        """Build a predicate for the current state; cheaper than repeated ``is_eligible`` calls.

        A modular package is eligible only while one of its streams is active.
        A non-modular package is hidden when an active stream ships a package of the same name.
        """
        owners: defaultdict[str, set[tuple[str, str]]] = defaultdict(set)
        active_names: set[str] = set()
        for stream in self._source.module_streams():
            active = self.active_stream(stream.name) == stream.stream
            for artifact in stream.artifacts:
                nevra = normalize_nevra(artifact)
                owners[nevra].add((stream.name, stream.stream))
                if active:
                    active_names.add(nevra.rsplit("-", 2)[0])
        module_names = {name for pairs in owners.values() for name, _ in pairs}
        active_pairs = {(name, self.active_stream(name)) for name in module_names}

        def is_eligible(record: PackageRecord) -> bool:
            streams = owners.get(record.nevra)
            if streams is None:
                return record.is_installed or record.name not in active_names
            return bool(streams & active_pairs)

        return is_eligible

    def is_eligible(self, record: PackageRecord) -> bool:
        return self.eligibility()(record)
