"""Tests for matrix expansion (pure data transformation)."""

from __future__ import annotations

import math

import pytest

from matrixci.errors import ConfigInvalid
from matrixci.matrix import compact_expressions, empty_axes, expand, expand_all, substitute
from matrixci.model import CacheSpec, JobTemplate, StepSpec, TriggerConfig, WorkflowSpec

BUILD = StepSpec(command="cargo", args=("+${{matrix.rust}}", "build"))


def _template(axes=None, **kwargs) -> JobTemplate:
    defaults = dict(name="ci", os="ubuntu-latest", steps=(BUILD,), matrix_axes=axes or {})
    defaults.update(kwargs)
    return JobTemplate(**defaults)


class TestCardinality:
    @pytest.mark.parametrize(
        "sizes",
        [(1,), (4,), (2, 3), (3, 1, 2), (2, 0, 3), (0,)],
    )
    def test_product_of_axis_sizes(self, sizes) -> None:
        axes = {f"a{i}": tuple(f"v{j}" for j in range(n)) for i, n in enumerate(sizes)}
        # no steps reference axes here
        template = _template(axes, steps=(StepSpec(command="true"),))

        assert len(expand(template)) == math.prod(sizes)

    def test_no_axes_yields_base_configuration(self) -> None:
        template = _template(steps=(StepSpec(command="make", args=("all",)),), env={"A": "1"})

        [instance] = expand(template)

        assert instance.job_name == "ci"
        assert instance.os == "ubuntu-latest"
        assert instance.axis_values == {}
        assert instance.steps == template.steps
        assert instance.env == {"A": "1"}
        assert instance.id == "ci"

    def test_empty_axis_yields_nothing(self) -> None:
        template = _template({"rust": ("stable",), "os": ()})

        assert expand(template) == []
        assert empty_axes(template) == ["os"]


class TestOrdering:
    def test_first_axis_outermost_in_declared_order(self) -> None:
        template = _template({"rust": ("stable", "beta"), "target": ("x86", "arm", "wasm")})

        ids = [i.id for i in expand(template)]

        assert ids == [
            "ci (stable, x86)",
            "ci (stable, arm)",
            "ci (stable, wasm)",
            "ci (beta, x86)",
            "ci (beta, arm)",
            "ci (beta, wasm)",
        ]

    def test_values_are_opaque_labels(self) -> None:
        template = _template({"rust": ("stable", "beta", "nightly", "1.63.0")})

        labels = [i.axis_values["rust"] for i in expand(template)]

        assert labels == ["stable", "beta", "nightly", "1.63.0"]

    def test_expand_all_keeps_job_order(self) -> None:
        a = _template({"rust": ("stable", "beta")}, name="linux")
        b = _template({"rust": ("stable",)}, name="windows", os="windows-2019")
        wf = WorkflowSpec(name="ci", triggers=TriggerConfig(), jobs=(a, b))

        assert [i.id for i in expand_all(wf)] == ["linux (stable)", "linux (beta)", "windows (stable)"]


class TestBinding:
    def test_step_expressions_are_substituted(self) -> None:
        [stable, beta] = expand(_template({"rust": ("stable", "beta")}))

        assert stable.steps[0].args == ("+stable", "build")
        assert beta.steps[0].args == ("+beta", "build")

    def test_os_axis_overrides_runs_on(self) -> None:
        template = _template({"os": ("linux", "windows", "mac"), "rust": ("stable",)})

        assert [i.os for i in expand(template)] == ["linux", "windows", "mac"]

    def test_runs_on_expression(self) -> None:
        template = _template({"platform": ("macos-latest",), "rust": ("stable",)}, os="${{ matrix.platform }}")

        [instance] = expand(template)

        assert instance.os == "macos-latest"

    def test_cache_namespace_and_env_are_bound(self) -> None:
        template = _template(
            {"rust": ("beta",)},
            env={"TOOLCHAIN": "${{ matrix.rust }}"},
            cache=CacheSpec(namespace="cargo-${{ matrix.rust }}", inputs=("Cargo.lock",), paths=("target",)),
        )

        [instance] = expand(template)

        assert instance.env == {"TOOLCHAIN": "beta"}
        assert instance.cache.namespace == "cargo-beta"
        assert instance.cache.paths == ("target",)

    def test_unknown_axis_is_invalid(self) -> None:
        template = _template({"toolchain": ("stable",)})

        with pytest.raises(ConfigInvalid, match="unknown matrix axis 'rust'"):
            expand(template)

    def test_runner_os(self) -> None:
        assert substitute("${{ runner.os }}-cargo", {}, "Linux") == "Linux-cargo"

    def test_unsupported_expression(self) -> None:
        with pytest.raises(ConfigInvalid, match="unsupported expression"):
            substitute("${{ secrets.TOKEN }}", {})

    def test_compact_expressions(self) -> None:
        assert compact_expressions("cargo +${{ matrix.rust }} test") == "cargo +${{matrix.rust}} test"
