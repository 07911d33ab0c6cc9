"""Command-line option values as a closed set of tagged variants."""

from enum import Enum
from typing import TypeAlias

from pydantic import BaseModel, ConfigDict, model_validator

from pkgresolve.errors import ConfigError, ErrorKind

OptionValue: TypeAlias = bool | str | tuple[str, ...]


class OptionKind(str, Enum):
    BOOL = "bool"
    STRING = "string"
    STRING_LIST = "string-list"


_PYTHON_TYPES = {OptionKind.BOOL: bool, OptionKind.STRING: str, OptionKind.STRING_LIST: tuple}


class Option(BaseModel):
    """One option or positional argument list. ``value`` is None until set."""

    model_config = ConfigDict(frozen=True)

    kind: OptionKind
    name: str
    description: str = ""
    default: OptionValue
    value: OptionValue | None = None

    @model_validator(mode="after")
    def _check_types(self):
        for value in (self.default, self.value):
            if value is not None and not isinstance(value, _PYTHON_TYPES[self.kind]):
                raise ValueError(f"option {self.name} is {self.kind.value}, got {type(value).__name__}")
        return self

    @property
    def is_set(self) -> bool:
        return self.value is not None

    @property
    def current(self) -> OptionValue:
        return self.default if self.value is None else self.value

    def set(self, value: OptionValue | list[str]) -> "Option":
        """A copy of this option holding ``value``.

        Raises:
            ConfigError: OPTION_TYPE if ``value`` does not fit the option kind
        """
        if self.kind == OptionKind.STRING_LIST and isinstance(value, list):
            value = tuple(value)
        if not isinstance(value, _PYTHON_TYPES[self.kind]):
            raise ConfigError(
                ErrorKind.OPTION_TYPE,
                f"option {self.name} takes a {self.kind.value} value, not {type(value).__name__}",
                option=self.name,
            )
        return self.model_copy(update={"value": value})

    def _expect(self, kind: OptionKind) -> OptionValue:
        if self.kind != kind:
            raise ConfigError(
                ErrorKind.OPTION_TYPE,
                f"option {self.name} is a {self.kind.value} option, read as {kind.value}",
                option=self.name,
            )
        return self.current

    def get_bool(self) -> bool:
        return self._expect(OptionKind.BOOL)

    def get_string(self) -> str:
        return self._expect(OptionKind.STRING)

    def get_string_list(self) -> tuple[str, ...]:
        return self._expect(OptionKind.STRING_LIST)


def bool_option(name: str, description: str = "", default: bool = False) -> Option:
    return Option(kind=OptionKind.BOOL, name=name, description=description, default=default)


def string_option(name: str, description: str = "", default: str = "") -> Option:
    return Option(kind=OptionKind.STRING, name=name, description=description, default=default)


def string_list_option(name: str, description: str = "") -> Option:
    return Option(kind=OptionKind.STRING_LIST, name=name, description=description, default=())


def listing_options(subject: str = "packages", spec_name: str = "package-spec") -> dict[str, Option]:
    """The ``--available`` / ``--installed`` / spec-pattern trio shared by listing commands."""
    return {
        "available": bool_option("available", f"Show only available {subject}."),
        "installed": bool_option("installed", f"Show only installed {subject}."),
        "spec": string_list_option(spec_name, f"Pattern matching {subject}."),
    }
