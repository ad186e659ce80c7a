"""
Quantile sketch tests: relative-error bound, mergeability, bounded size.
"""

import pytest

from coldpath.sketch import QuantileSketch


def sketch_of(values, **kwargs):
    s = QuantileSketch(**kwargs)
    for v in values:
        s.add(v)
    return s


@pytest.mark.parametrize('q,expected', [(0.5, 500), (0.95, 950), (0.99, 990)])
def test_quantile_within_relative_accuracy(q, expected):
    s = sketch_of(range(1, 1001))
    assert abs(s.quantile(q) - expected) / expected <= 0.0101


def test_merge_matches_single_stream():
    a, b, c = range(1, 300), range(300, 700), range(700, 1000)
    whole = sketch_of(list(a) + list(b) + list(c))
    sa, sb, sc = sketch_of(a), sketch_of(b), sketch_of(c)

    assert sa.merge(sb).merge(sc) == whole
    assert sa.merge(sb.merge(sc)) == whole
    assert sc.merge(sa).merge(sb) == whole
    # merge returns a new sketch
    assert sa == sketch_of(a)


def test_negative_and_zero_values():
    s = sketch_of([-5.0, 0.0, 5.0])
    assert s.quantile(0.0) == pytest.approx(-5.0, rel=0.01)
    assert s.quantile(0.5) == 0.0
    assert s.quantile(1.0) == pytest.approx(5.0, rel=0.01)


def test_collapse_keeps_high_quantiles():
    s = sketch_of(range(1, 10001), max_bins=10)
    assert len(s.positive) <= 10
    assert s.count == 10000
    assert s.quantile(0.99) == pytest.approx(9900, rel=0.0101)


def test_serialization():
    s = sketch_of([0.0, 1.5, -2.25, 1000.0])
    restored = QuantileSketch.from_dict(s.to_dict())
    assert restored == s
    assert restored.count == 4


def test_edge_cases():
    s = QuantileSketch()
    assert s.quantile(0.5) is None
    with pytest.raises(ValueError):
        s.quantile(1.5)
    with pytest.raises(ValueError):
        s.add(float('inf'))
    with pytest.raises(ValueError):
        s.merge(QuantileSketch(relative_accuracy=0.05))
