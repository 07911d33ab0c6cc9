"""Unit tests for module stream state and modular filtering."""

import pytest
from helpers import make_package, make_stream

from pkgresolve.errors import ErrorKind, ModuleError
from pkgresolve.models import ModuleChange
from pkgresolve.module_index import ModuleIndex, ModuleSpec, normalize_nevra
from pkgresolve.universe import PackageUniverse

NODEJS_18 = make_package("nodejs", "18.19", "1.module", repo_id="appstream", epoch=1)
NODEJS_20 = make_package("nodejs", "20.11", "1.module", repo_id="appstream", epoch=1)
NODEJS_PLAIN = make_package("nodejs", "16.20", "2", repo_id="appstream", epoch=1)


@pytest.fixture
def modules() -> ModuleIndex:
    universe = PackageUniverse()
    universe.replace_repository(
        "appstream",
        [NODEJS_18, NODEJS_20, NODEJS_PLAIN],
        modules=[
            make_stream(
                "nodejs",
                "18",
                repo_id="appstream",
                default=True,
                artifacts=[NODEJS_18.nevra, "npm-10.2-1.module.x86_64"],
                profiles={"default": ["nodejs", "npm"], "minimal": ["nodejs"]},
            ),
            make_stream("nodejs", "20", repo_id="appstream", artifacts=[NODEJS_20.nevra]),
            make_stream("perl", "5.32", repo_id="appstream", default=True),
            make_stream("perl", "5.36", repo_id="appstream"),
            make_stream("perl-DBI", "1.6", repo_id="appstream", requires=["perl:5.36"]),
        ],
    )
    return ModuleIndex(universe)


class TestModuleSpec:
    def test_parse_all_fields(self):
        spec = ModuleSpec.parse("nodejs:18:8090020240101:c0ffee:x86_64/minimal")
        assert spec == ModuleSpec("nodejs", "18", "8090020240101", "c0ffee", "x86_64", "minimal")

    @pytest.mark.parametrize("pattern", ["", ":18", "a:b:c:d:e:f"])
    def test_parse_invalid(self, pattern):
        with pytest.raises(ValueError):
            ModuleSpec.parse(pattern)

    def test_normalize_nevra(self):
        assert normalize_nevra("npm-10.2-1.module.x86_64") == "npm-0:10.2-1.module.x86_64"
        assert normalize_nevra("nodejs-1:18.19-1.x86_64") == "nodejs-1:18.19-1.x86_64"


class TestResolveSpec:
    def test_name_only_prefers_default(self, modules):
        assert [s.stream for s in modules.resolve_spec("nodejs")] == ["18"]

    def test_name_only_prefers_enabled(self, modules):
        modules.enable("nodejs", "20")
        assert [s.stream for s in modules.resolve_spec("nodejs")] == ["20"]

    def test_glob_stream(self, modules):
        assert [s.stream for s in modules.resolve_spec("nodejs:2*")] == ["20"]

    def test_profile(self, modules):
        assert [s.stream for s in modules.resolve_spec("nodejs:*/minimal")] == ["18"]

    def test_without_default_every_stream_matches(self, modules):
        assert [s.stream for s in modules.resolve_spec("perl-DBI")] == ["1.6"]


class TestEnableDisable:
    def test_enable(self, modules):
        changes = modules.enable("nodejs", "20")
        assert changes == [ModuleChange(name="nodejs", action="enable", stream="20")]
        assert modules.enabled_stream("nodejs") == "20"
        assert modules.generation == 1

    def test_enable_same_stream_is_noop(self, modules):
        modules.enable("nodejs", "20")
        assert modules.enable("nodejs", "20") == []
        assert modules.generation == 1

    def test_enable_conflicting_stream(self, modules):
        modules.enable("nodejs", "20")
        with pytest.raises(ModuleError) as exc_info:
            modules.enable("nodejs", "18")
        assert exc_info.value.kind == ErrorKind.STREAM_CONFLICT
        assert modules.enabled_stream("nodejs") == "20"

    def test_enable_unknown_stream(self, modules):
        with pytest.raises(ModuleError) as exc_info:
            modules.enable("nodejs", "99")
        assert exc_info.value.kind == ErrorKind.NO_SUCH_STREAM

    def test_enable_pulls_required_streams(self, modules):
        changes = modules.enable("perl-DBI", "1.6")
        assert [(c.name, c.stream) for c in changes] == [("perl-DBI", "1.6"), ("perl", "5.36")]
        assert modules.enabled_stream("perl") == "5.36"

    def test_failed_dependency_leaves_state_untouched(self, modules):
        modules.enable("perl", "5.32")
        with pytest.raises(ModuleError) as exc_info:
            modules.enable("perl-DBI", "1.6")
        assert exc_info.value.kind == ErrorKind.STREAM_CONFLICT
        assert modules.enabled_stream("perl-DBI") is None

    def test_disable_and_reset(self, modules):
        assert modules.active_stream("nodejs") == "18"
        modules.disable("nodejs")
        assert modules.is_disabled("nodejs")
        assert modules.active_stream("nodejs") is None
        modules.reset("nodejs")
        assert modules.active_stream("nodejs") == "18"

    def test_disable_unknown_module(self, modules):
        with pytest.raises(ModuleError) as exc_info:
            modules.disable("ruby")
        assert exc_info.value.kind == ErrorKind.NO_SUCH_STREAM

    def test_switch(self, modules):
        modules.enable("nodejs", "18")
        changes = modules.switch("nodejs", "20")
        assert [(c.action, c.stream) for c in changes] == [("disable", None), ("enable", "20")]
        assert modules.enabled_stream("nodejs") == "20"

    def test_stream_state(self, modules):
        modules.enable("nodejs", "20")
        states = {s.stream: modules.stream_state(s) for s in modules.streams("nodejs")}
        assert states == {"18": "default", "20": "enabled"}


class TestEligibility:
    def test_default_stream_is_active(self, modules):
        assert modules.is_eligible(NODEJS_18)
        assert not modules.is_eligible(NODEJS_20)

    def test_non_modular_package_hidden_by_active_stream(self, modules):
        assert not modules.is_eligible(NODEJS_PLAIN)
        assert modules.is_eligible(NODEJS_PLAIN.model_copy(update={"repo_id": "@System"}))

    def test_disabled_module(self, modules):
        modules.disable("nodejs")
        assert not modules.is_eligible(NODEJS_18)
        assert modules.is_eligible(NODEJS_PLAIN)

    def test_unrelated_package(self, modules):
        assert modules.is_eligible(make_package("bash"))


class TestSnapshotAndApply:
    def test_snapshot_is_independent(self, modules):
        snapshot = modules.snapshot()
        snapshot.enable("nodejs", "20")
        assert modules.enabled_stream("nodejs") is None

    def test_apply(self, modules):
        modules.apply(
            [
                ModuleChange(name="nodejs", action="enable", stream="20"),
                ModuleChange(name="perl", action="disable"),
            ]
        )
        assert modules.enabled_stream("nodejs") == "20"
        assert modules.is_disabled("perl")

    def test_apply_is_all_or_nothing(self, modules):
        modules.enable("nodejs", "18")
        with pytest.raises(ModuleError):
            modules.apply(
                [
                    ModuleChange(name="perl", action="enable", stream="5.36"),
                    ModuleChange(name="nodejs", action="enable", stream="20"),
                ]
            )
        assert modules.enabled_stream("perl") is None
