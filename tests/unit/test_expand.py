"""Tests for transform expansion: map, cross and combine."""

from __future__ import annotations

import functools

import pytest

from kiln import Combine, Cross, Map, Plan, PlanError, expand_plan
from kiln.plan.expand import combinations, expansion_suffix


def fit(rec, units):
    return rec * units


def compare(model):
    return max(model)


class TestCombinations:
    def test_map_zips_in_order(self):
        """Map pairs values index by index."""
        rows = combinations(Map(units=[16, 32], lr=[0.1, 0.2]))
        assert rows == [{"units": 16, "lr": 0.1}, {"units": 32, "lr": 0.2}]

    def test_map_mismatched_lengths(self):
        """Map with unequal list lengths is a plan error."""
        with pytest.raises(PlanError, match="mismatched lengths"):
            combinations(Map(units=[16, 32], lr=[0.1]), "model")

    def test_cross_product(self):
        """Cross enumerates every combination, first parameter outermost."""
        rows = combinations(Cross(a=[1, 2], b=["x", "y"]))
        assert rows == [
            {"a": 1, "b": "x"},
            {"a": 1, "b": "y"},
            {"a": 2, "b": "x"},
            {"a": 2, "b": "y"},
        ]

    def test_empty_parameters(self):
        with pytest.raises(PlanError, match="no parameters"):
            combinations(Map())


class TestExpansionSuffix:
    def test_sanitizes_values(self):
        assert expansion_suffix(16) == "16"
        assert expansion_suffix(0.5) == "0_5"
        assert expansion_suffix("relu tanh") == "relu_tanh"

    def test_empty_value(self):
        assert expansion_suffix("") == "x"


class TestExpandMap:
    def test_expression_template(self):
        """Each expansion gets the literal value substituted into its command."""
        plan = Plan("p")
        plan.target("rec", "1")
        plan.target("model", "fit(rec, units=units)", transform=Map(units=[16, 32]))

        expanded = expand_plan(plan)

        assert expanded.names() == ["rec", "model_16", "model_32"]
        m16 = expanded.get("model_16")
        assert m16.command == "fit(rec, units=16)"
        assert m16.transform is None
        assert m16.group == "model"
        assert m16.params == {"units": 16}

    def test_original_plan_untouched(self):
        """Expansion returns a new plan."""
        plan = Plan("p")
        plan.target("model", "units * 2", transform=Map(units=[1, 2]))
        expand_plan(plan)
        assert plan.names() == ["model"]
        assert plan.get("model").transform is not None

    def test_callable_template_binds_partial(self):
        """Callable templates receive parameters as bound keywords."""
        plan = Plan("p")
        plan.target("rec", "2")
        plan.target("model", fit, transform=Map(units=[16, 32]))

        expanded = expand_plan(plan)
        command = expanded.get("model_32").command

        assert isinstance(command, functools.partial)
        assert command.keywords == {"units": 32}
        assert command(rec=2) == 64

    def test_cross_names(self):
        plan = Plan("p")
        plan.target("run", "(a, b)", transform=Cross(a=[1, 2], b=["x", "y"]))
        assert expand_plan(plan).names() == ["run_1_x", "run_1_y", "run_2_x", "run_2_y"]

    def test_non_literal_value_in_expression(self):
        """Values without a literal form cannot be written into an expression."""
        plan = Plan("p")
        plan.target("model", "units", transform=Map(units=[object()]))
        with pytest.raises(PlanError, match="not a literal"):
            expand_plan(plan)

    def test_duplicate_names_after_expansion(self):
        plan = Plan("p")
        plan.target("model_16", "1")
        plan.target("model", "units", transform=Map(units=[16]))
        with pytest.raises(PlanError, match="Duplicate"):
            expand_plan(plan)


class TestExpandCombine:
    def test_expression_combine(self):
        """Combine replaces the template name with a list of its expansions."""
        plan = Plan("p")
        plan.target("model", "units", transform=Map(units=[16, 32]))
        plan.target("combined", "compare(model)", transform=Combine("model"))

        combined = expand_plan(plan).get("combined")

        assert combined.command == "compare([model_16, model_32])"
        assert combined.transform is None

    def test_combine_declared_before_template(self):
        """Map/Cross expand first, so declaration order does not matter."""
        plan = Plan("p")
        plan.target("combined", "compare(model)", transform=Combine("model"))
        plan.target("model", "units", transform=Map(units=[1, 2]))
        expanded = expand_plan(plan)
        assert expanded.get("combined").command == "compare([model_1, model_2])"

    def test_combine_by(self):
        """Combine with by= yields one target per distinct value."""
        plan = Plan("p")
        plan.target("model", "(units, seed)", transform=Cross(units=[16, 32], seed=[1, 2]))
        plan.target("best", "max(model)", transform=Combine("model", by="units"))

        expanded = expand_plan(plan)

        assert expanded.get("best_16").command == "max([model_16_1, model_16_2])"
        assert expanded.get("best_32").command == "max([model_32_1, model_32_2])"
        assert expanded.get("best_16").params == {"units": 16}

    def test_combine_by_unknown_parameter(self):
        plan = Plan("p")
        plan.target("model", "units", transform=Map(units=[16]))
        plan.target("best", "max(model)", transform=Combine("model", by="seed"))
        with pytest.raises(PlanError, match="no parameter 'seed'"):
            expand_plan(plan)

    def test_callable_combine_gathers(self):
        """Callable combiners receive the expansions as a gathered list."""
        plan = Plan("p")
        plan.target("model", "units", transform=Map(units=[16, 32]))
        plan.target("combined", compare, transform=Combine("model"))

        combined = expand_plan(plan).get("combined")

        assert combined.command is compare
        assert combined.gather == {"model": ["model_16", "model_32"]}

    def test_combine_unknown_template(self):
        plan = Plan("p")
        plan.target("combined", "compare(model)", transform=Combine("model"))
        with pytest.raises(PlanError, match="unknown target 'model'"):
            expand_plan(plan)

    def test_combine_plain_target(self):
        """A plain target combines as a one-element list."""
        plan = Plan("p")
        plan.target("a", "1")
        plan.target("all", "sum(a)", transform=Combine("a"))
        assert expand_plan(plan).get("all").command == "sum([a])"
