import pytest

from ciflow.errors import DefinitionError
from ciflow.matrix import expand


def coords(expansion):
    return [dict(i.coordinate) for i in expansion.instances]


def test_no_matrix_yields_single_instance(job):
    exp = expand(job("lint"))
    assert coords(exp) == [{}]
    assert exp.instances[0].instance_id == "lint"
    assert not exp.empty


def test_cross_product_first_axis_slowest(job):
    exp = expand(job("test", matrix={"os": ["linux", "mac"], "py": ["3.11", "3.12"]}))
    assert coords(exp) == [
        {"os": "linux", "py": "3.11"},
        {"os": "linux", "py": "3.12"},
        {"os": "mac", "py": "3.11"},
        {"os": "mac", "py": "3.12"},
    ]
    assert [i.index for i in exp.instances] == [0, 1, 2, 3]


def test_partial_exclude_removes_every_match(job):
    exp = expand(job(
        "test",
        matrix={"os": ["linux", "mac"], "py": ["3.11", "3.12"]},
        exclude=[{"os": "mac"}],
    ))
    assert coords(exp) == [{"os": "linux", "py": "3.11"}, {"os": "linux", "py": "3.12"}]


def test_include_appends_new_coordinates_once(job):
    exp = expand(job(
        "test",
        matrix={"py": ["3.11"]},
        include=[{"py": "3.13"}, {"py": "3.11"}],
    ))
    assert coords(exp) == [{"py": "3.11"}, {"py": "3.13"}]


def test_full_coordinate_exclude_removes_exactly_one(job):
    exp = expand(job(
        "test",
        matrix={"os": ["a", "b"], "py": ["x", "y"]},
        exclude=[{"os": "a", "py": "x"}],
    ))
    assert len(exp.instances) == 3
    assert {"os": "a", "py": "x"} not in coords(exp)


def test_excluding_every_combination_is_empty(job):
    exp = expand(job("test", matrix={"os": ["a"]}, exclude=[{"os": "a"}]))
    assert exp.empty
    assert exp.instances == []


def test_zero_value_axis_is_empty_not_an_error(job):
    exp = expand(job("test", matrix={"py": [], "os": ["linux"]}))
    assert exp.empty
    assert exp.instances == []


def test_expansion_is_deterministic(job):
    j = job("test", matrix={"a": [1, 2, 3], "b": ["x", "y"]}, exclude=[{"a": 2, "b": "y"}])
    assert coords(expand(j)) == coords(expand(j))


def test_instance_id_includes_coordinate(job):
    exp = expand(job("test", matrix={"python-version": ["3.12"]}))
    assert exp.instances[0].instance_id == "test (python-version=3.12)"


def test_duplicate_axis_values_rejected(job):
    with pytest.raises(DefinitionError) as exc:
        expand(job("test", matrix={"py": ["3.12", "3.12"]}))
    assert exc.value.job_ids == ("test",)


def test_exclude_with_unknown_axis_rejected(job):
    with pytest.raises(DefinitionError):
        expand(job("test", matrix={"py": ["3.12"]}, exclude=[{"os": "mac"}]))
