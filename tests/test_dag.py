from __future__ import annotations

import pytest

from runway.dag import validate_graph
from runway.dsl import job, sh
from runway.errors import PipelineError


def _job(name, needs=()):
    return job(name, sh("x", "true"), needs=list(needs))


def test_stages_group_independent_jobs():
    stages = validate_graph([_job("a"), _job("b"), _job("c", ["a", "b"]), _job("d", ["c"])])
    assert stages == [["a", "b"], ["c"], ["d"]]


def test_cycle_is_rejected():
    with pytest.raises(PipelineError, match="[Cc]ycle"):
        validate_graph([_job("a", ["b"]), _job("b", ["a"])])


@pytest.mark.parametrize(
    "jobs",
    [
        [_job("a"), _job("a")],
        [_job("a", ["missing"])],
        [_job("a", ["a"])],
    ],
)
def test_invalid_graphs_are_rejected(jobs):
    with pytest.raises(PipelineError):
        validate_graph(jobs)
