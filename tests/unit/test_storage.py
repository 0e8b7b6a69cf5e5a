from __future__ import annotations

import threading

import numpy as np
import pytest

from archflow.errors import UnknownComponent
from archflow.graph.builders import from_layer_specs
from archflow.runtime.storage import Observation, PassKind, TraceSet, TraceStore


def _graph():
    return from_layer_specs(
        {
            "a": {"kind": "feed_forward"},
            "b": {"kind": "feed_forward", "inputs": ["a"]},
        }
    )


def test_record_rejects_unknown_component() -> None:
    store = TraceStore(_graph())

    with pytest.raises(UnknownComponent):
        store.record("ghost", PassKind.FORWARD, 0, Observation(1.0, [1.0, 2.0]))
    assert len(store) == 0


def test_record_many_returns_gaps() -> None:
    store = TraceStore(_graph())

    gaps = store.record_many(
        PassKind.FORWARD,
        0,
        {"a": Observation(1.0, [1.0, 2.0]), "ghost": Observation(2.0, [0.0, 1.0])},
    )

    assert gaps == ["ghost"]
    assert len(store) == 1


def test_fingerprint_length_is_fixed_by_first_record() -> None:
    store = TraceStore(_graph())
    store.record("a", PassKind.FORWARD, 0, Observation(1.0, [1.0, 2.0, 3.0]))

    with pytest.raises(ValueError):
        store.record("b", PassKind.FORWARD, 0, Observation(1.0, [1.0, 2.0]))
    # gradient digests may omit the fingerprint
    store.record("b", PassKind.BACKWARD, 0, Observation(0.5))
    assert store.fingerprint_length == 3


def test_observation_is_immutable_and_validated() -> None:
    obs = Observation(1.0, [1.0, 2.0], sparsity=0.5)

    with pytest.raises(ValueError):
        obs.fingerprint[0] = 3.0
    with pytest.raises(ValueError):
        Observation(1.0, [1.0], sparsity=1.5)


def test_snapshot_is_restartable_and_bounded() -> None:
    store = TraceStore(_graph())
    for sample in range(3):
        store.record("a", PassKind.FORWARD, sample, Observation(float(sample), [sample, 1.0]))

    snapshot = store.snapshot("a", PassKind.FORWARD)
    store.record("a", PassKind.FORWARD, 3, Observation(3.0, [3.0, 1.0]))

    first = [obs.magnitude for obs in snapshot]
    second = [obs.magnitude for obs in snapshot]
    assert first == second == [0.0, 1.0, 2.0]
    assert len(snapshot) == 3
    assert len(store.snapshot("a", PassKind.FORWARD)) == 4


def test_concurrent_appends_are_all_kept() -> None:
    store = TraceStore(_graph())

    def writer(offset: int) -> None:
        for idx in range(200):
            store.record("a", PassKind.FORWARD, offset + idx, Observation(1.0, [1.0, 0.0]))

    threads = [threading.Thread(target=writer, args=(1000 * t,)) for t in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(store) == 800
    assert len(set(store.trace_set().sample_ids())) == 800


def test_trace_set_views() -> None:
    store = TraceStore(_graph())
    store.record("a", PassKind.FORWARD, "s0", Observation(1.0, [1.0, 0.0]))
    store.record("b", PassKind.FORWARD, "s0", Observation(2.0, [0.0, 1.0]))
    store.record("a", PassKind.FORWARD, "s1", Observation(3.0, [1.0, 1.0]))

    traces = store.trace_set()
    left, right = traces.partition(lambda r: r.sample_id == "s0")

    assert isinstance(traces[:2], TraceSet)
    assert len(left) == 2 and len(right) == 1
    assert [o.magnitude for o in traces.for_component("a", PassKind.FORWARD)] == [1.0, 3.0]
    assert np.allclose(traces.by_sample(PassKind.FORWARD)["s0"]["b"][0].fingerprint, [0.0, 1.0])
