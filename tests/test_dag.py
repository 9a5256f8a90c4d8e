from __future__ import annotations

import pytest

from matrixci.dag import build_dag, topo_levels, validate_steps
from matrixci.dsl import step
from matrixci.errors import ConfigurationError
from matrixci.model import GroupStep


def _s(key, *deps):
    return step(key).run("true").depends_on(*deps).build()


def test_levels_follow_dependencies():
    steps = [_s("a"), _s("b", "a"), _s("c", "a"), _s("d", "b", "c")]
    assert validate_steps(steps) == [["a"], ["b", "c"], ["d"]]


def test_group_members_take_part_in_the_graph():
    group = GroupStep(key="g", group="g", steps=(_s("a"), _s("b", "a")))
    adj, indeg = build_dag([group, _s("c", "b")])
    assert indeg == {"g": 0, "a": 0, "b": 1, "c": 1}
    assert topo_levels(adj, indeg)[-1] == ["c"]


def test_duplicate_keys():
    with pytest.raises(ConfigurationError, match="duplicate"):
        validate_steps([_s("a"), _s("a")])


def test_missing_dependency():
    with pytest.raises(ConfigurationError, match="missing step 'zzz'"):
        validate_steps([_s("a", "zzz")])


def test_cycle():
    with pytest.raises(ConfigurationError, match="cycle"):
        validate_steps([_s("a", "b"), _s("b", "a"), _s("c")])
