import pytest

from server_provisioner.errors import ConfigurationError, CycleDetected, DuplicateStep, UnknownDependency
from server_provisioner.graph import DependencyGraph
from server_provisioner.step import step


def s(sid, *deps):
    return step(sid, check=lambda: False, apply=lambda: None, depends_on=deps)


class TestOrder:
    def test_dependencies_come_first(self):
        steps = [s("d", "b", "c"), s("c", "a"), s("b", "a"), s("a")]
        order = DependencyGraph.build(steps).order()
        pos = {sid: i for i, sid in enumerate(order)}
        for st in steps:
            for dep in st.depends_on:
                assert pos[dep] < pos[st.id]

    def test_ties_broken_by_declaration_order(self):
        # a, b and c are all ready at once
        steps = [s("c"), s("a"), s("b")]
        assert DependencyGraph.build(steps).order() == ["c", "a", "b"]

    def test_four_step_example(self):
        steps = [s("A"), s("B", "A"), s("C", "A"), s("D", "B", "C")]
        assert DependencyGraph.build(steps).order() == ["A", "B", "C", "D"]

    def test_order_is_deterministic(self):
        steps = [s("x"), s("y", "x"), s("z"), s("w", "z", "x")]
        orders = {tuple(DependencyGraph.build(steps).order()) for _ in range(5)}
        assert len(orders) == 1

    def test_repeated_dependency_counted_once(self):
        order = DependencyGraph.build([s("a"), s("b", "a", "a")]).order()
        assert order == ["a", "b"]

    def test_empty(self):
        assert DependencyGraph.build([]).order() == []


class TestValidation:
    def test_duplicate_id(self):
        with pytest.raises(DuplicateStep) as e:
            DependencyGraph.build([s("a"), s("a")])
        assert e.value.step_id == "a"

    def test_unknown_dependency(self):
        with pytest.raises(UnknownDependency) as e:
            DependencyGraph.build([s("a", "ghost")])
        assert e.value.missing == "ghost"
        assert isinstance(e.value, ConfigurationError)

    def test_cycle_is_named(self):
        with pytest.raises(CycleDetected) as e:
            DependencyGraph.build([s("a", "b"), s("b", "a")])
        cycle = e.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b"}
        assert "->" in str(e.value)

    def test_self_cycle(self):
        with pytest.raises(CycleDetected) as e:
            DependencyGraph.build([s("a", "a")])
        assert e.value.cycle == ["a", "a"]

    def test_cycle_behind_valid_prefix(self):
        steps = [s("root"), s("x", "root", "z"), s("y", "x"), s("z", "y")]
        with pytest.raises(CycleDetected) as e:
            DependencyGraph.build(steps)
        assert set(e.value.cycle) == {"x", "y", "z"}


class TestQueries:
    def test_dependents_are_transitive(self):
        g = DependencyGraph.build([s("a"), s("b", "a"), s("c", "b"), s("d")])
        assert g.dependents_of("a") == {"b", "c"}
        assert g.dependents_of("d") == set()

    def test_membership_and_lookup(self):
        g = DependencyGraph.build([s("a"), s("b", "a")])
        assert "a" in g and "zz" not in g
        assert len(g) == 2
        assert g.step("b").depends_on == ("a",)


def test_provisioning_example_order():
    steps = [
        s("install-compat"),
        s("init-prefix", "install-compat"),
        s("deliver-game"),
        s("register-service", "init-prefix", "deliver-game"),
    ]
    order = DependencyGraph.build(steps).order()
    assert order == ["install-compat", "init-prefix", "deliver-game", "register-service"]
