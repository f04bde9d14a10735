"""Graph Validator tests"""
import pytest

from playbook_engine.domain.errors import GraphCyclicError, GraphInvalidError
from playbook_engine.engine.graph_validator import GraphValidator

from tests.helpers import step


@pytest.fixture
def validator():
    return GraphValidator()


def test_valid_dag_returns_topological_order(validator):
    steps = [
        step("report", depends_on_steps=["publish", "alert"]),
        step("assess"),
        step("alert", depends_on_steps=["assess"]),
        step("publish", depends_on_steps=["assess"]),
    ]

    graph = validator.validate(steps)

    position = {step_id: i for i, step_id in enumerate(graph.order)}
    assert sorted(graph.order) == ["alert", "assess", "publish", "report"]
    assert position["assess"] < position["alert"] < position["report"]
    assert position["assess"] < position["publish"] < position["report"]
    assert sorted(graph.successors["assess"]) == ["alert", "publish"]
    assert graph.successors["publish"] == ["report"]
    assert sorted(graph.predecessors["report"]) == ["alert", "publish"]


def test_duplicate_step_ids_rejected(validator):
    with pytest.raises(GraphInvalidError) as exc_info:
        validator.validate([step("a"), step("a")])

    assert [e["type"] for e in exc_info.value.errors] == ["DUPLICATE_STEP_ID"]


def test_unknown_dependency_rejected(validator):
    with pytest.raises(GraphInvalidError) as exc_info:
        validator.validate([step("a", depends_on_steps=["ghost"])])

    error = exc_info.value.errors[0]
    assert error["type"] == "UNKNOWN_DEPENDENCY"
    assert error["depends_on"] == "ghost"


def test_self_dependency_rejected(validator):
    with pytest.raises(GraphInvalidError) as exc_info:
        validator.validate([step("a", depends_on_steps=["a"])])

    assert exc_info.value.errors[0]["type"] == "SELF_DEPENDENCY"


def test_all_structural_errors_reported_together(validator):
    steps = [step("a", depends_on_steps=["a"]), step("a"), step("b", depends_on_steps=["zzz"])]

    with pytest.raises(GraphInvalidError) as exc_info:
        validator.validate(steps)

    types = {e["type"] for e in exc_info.value.errors}
    assert types == {"SELF_DEPENDENCY", "DUPLICATE_STEP_ID", "UNKNOWN_DEPENDENCY"}


def test_empty_playbook_rejected(validator):
    with pytest.raises(GraphInvalidError) as exc_info:
        validator.validate([])

    assert exc_info.value.errors[0]["type"] == "EMPTY_PLAYBOOK"


def test_signal_step_without_signal_type_rejected(validator):
    with pytest.raises(GraphInvalidError) as exc_info:
        validator.validate([step("wait_press", "wait", wait_for_signals=True)])

    assert exc_info.value.errors[0]["type"] == "MISSING_SIGNAL_TYPE"


def test_cycle_reported_with_path(validator):
    steps = [
        step("a", depends_on_steps=["c"]),
        step("b", depends_on_steps=["a"]),
        step("c", depends_on_steps=["b"]),
    ]

    with pytest.raises(GraphCyclicError) as exc_info:
        validator.validate(steps)

    cycle = exc_info.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert len(cycle) == 4
    assert exc_info.value.error_code == "GRAPH_CYCLIC"


def test_cycle_in_one_branch_detected(validator):
    steps = [
        step("root"),
        step("x", depends_on_steps=["root", "y"]),
        step("y", depends_on_steps=["x"]),
        step("z", depends_on_steps=["root"]),
    ]

    with pytest.raises(GraphCyclicError) as exc_info:
        validator.validate(steps)

    assert set(exc_info.value.cycle) == {"x", "y"}


def test_duplicate_dependency_entries_collapse(validator):
    graph = validator.validate([step("a"), step("b", depends_on_steps=["a", "a"])])

    assert graph.predecessors["b"] == ["a"]
    assert graph.successors["a"] == ["b"]


def test_long_chain_declared_in_reverse(validator):
    steps = [
        step(f"s{i}", depends_on_steps=[f"s{i - 1}"] if i else [])
        for i in reversed(range(1500))
    ]

    graph = validator.validate(steps)

    assert graph.order == [f"s{i}" for i in range(1500)]
    assert graph.successors["s0"] == ["s1"]


def test_cycle_at_end_of_long_chain(validator):
    steps = [
        step(f"s{i}", depends_on_steps=[f"s{i - 1}"] if i else ["s1499"])
        for i in reversed(range(1500))
    ]

    with pytest.raises(GraphCyclicError) as exc_info:
        validator.validate(steps)

    cycle = exc_info.value.cycle
    assert cycle[0] == cycle[-1]
    assert len(cycle) == 1501
