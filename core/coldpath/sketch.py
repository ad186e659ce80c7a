"""
Mergeable quantile sketch with relative-error guarantees.

Values are counted in logarithmic bins: bin i covers (gamma^(i-1), gamma^i]
with gamma = (1 + a) / (1 - a), so any quantile is returned within a relative
error ``a`` of a true sample value. Bins are integer counters, which makes
merge exactly associative and commutative as long as no collapse happens.
"""

import math
from typing import Dict, Optional

DEFAULT_RELATIVE_ACCURACY = 0.01
DEFAULT_MAX_BINS = 2048
MIN_INDEXABLE_VALUE = 1e-9


class QuantileSketch:

    __slots__ = ['relative_accuracy', 'max_bins', 'gamma', '_log_gamma',
                 'positive', 'negative', 'zero_count', 'count']

    def __init__(self, relative_accuracy: float = DEFAULT_RELATIVE_ACCURACY, max_bins: int = DEFAULT_MAX_BINS):
        if not 0 < relative_accuracy < 1:
            raise ValueError("relative_accuracy must be in (0, 1)")
        self.relative_accuracy = relative_accuracy
        self.max_bins = max_bins
        self.gamma = (1 + relative_accuracy) / (1 - relative_accuracy)
        self._log_gamma = math.log(self.gamma)
        self.positive: Dict[int, int] = {}
        self.negative: Dict[int, int] = {}
        self.zero_count = 0
        self.count = 0

    def _index(self, magnitude: float) -> int:
        return int(math.ceil(math.log(magnitude) / self._log_gamma))

    def _bin_value(self, index: int) -> float:
        return 2.0 * self.gamma ** index / (self.gamma + 1.0)

    def add(self, value: float, count: int = 1):
        if count <= 0:
            return
        if not math.isfinite(value):
            raise ValueError(f"cannot add non-finite value {value!r}")
        if value > MIN_INDEXABLE_VALUE:
            idx = self._index(value)
            self.positive[idx] = self.positive.get(idx, 0) + count
            self._collapse(self.positive)
        elif value < -MIN_INDEXABLE_VALUE:
            idx = self._index(-value)
            self.negative[idx] = self.negative.get(idx, 0) + count
            self._collapse(self.negative)
        else:
            self.zero_count += count
        self.count += count

    def _collapse(self, bins: Dict[int, int]):
        # Fold the smallest magnitudes together; high quantiles keep full accuracy.
        while len(bins) > self.max_bins:
            lowest, second = sorted(bins)[:2]
            bins[second] += bins.pop(lowest)

    def _check_compatible(self, other: 'QuantileSketch'):
        if not math.isclose(self.relative_accuracy, other.relative_accuracy):
            raise ValueError(
                f"cannot merge sketches with accuracy {self.relative_accuracy} and {other.relative_accuracy}"
            )

    def update(self, other: 'QuantileSketch'):
        """Merge ``other`` into this sketch in place."""
        self._check_compatible(other)
        for idx, n in other.positive.items():
            self.positive[idx] = self.positive.get(idx, 0) + n
        for idx, n in other.negative.items():
            self.negative[idx] = self.negative.get(idx, 0) + n
        self._collapse(self.positive)
        self._collapse(self.negative)
        self.zero_count += other.zero_count
        self.count += other.count

    def merge(self, other: 'QuantileSketch') -> 'QuantileSketch':
        merged = self.copy()
        merged.update(other)
        return merged

    def copy(self) -> 'QuantileSketch':
        clone = QuantileSketch(self.relative_accuracy, self.max_bins)
        clone.positive = dict(self.positive)
        clone.negative = dict(self.negative)
        clone.zero_count = self.zero_count
        clone.count = self.count
        return clone

    def quantile(self, q: float) -> Optional[float]:
        if not 0 <= q <= 1:
            raise ValueError("quantile must be in [0, 1]")
        if self.count == 0:
            return None
        rank = q * (self.count - 1)
        seen = 0
        for idx in sorted(self.negative, reverse=True):
            seen += self.negative[idx]
            if seen > rank:
                return -self._bin_value(idx)
        seen += self.zero_count
        if seen > rank:
            return 0.0
        for idx in sorted(self.positive):
            seen += self.positive[idx]
            if seen > rank:
                return self._bin_value(idx)
        return self._bin_value(max(self.positive)) if self.positive else 0.0

    def to_dict(self) -> Dict:
        return {
            'relative_accuracy': self.relative_accuracy,
            'max_bins': self.max_bins,
            'zero': self.zero_count,
            'positive': {str(k): v for k, v in sorted(self.positive.items())},
            'negative': {str(k): v for k, v in sorted(self.negative.items())},
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'QuantileSketch':
        sketch = cls(data.get('relative_accuracy', DEFAULT_RELATIVE_ACCURACY),
                     data.get('max_bins', DEFAULT_MAX_BINS))
        sketch.positive = {int(k): int(v) for k, v in data.get('positive', {}).items()}
        sketch.negative = {int(k): int(v) for k, v in data.get('negative', {}).items()}
        sketch.zero_count = int(data.get('zero', 0))
        sketch.count = sketch.zero_count + sum(sketch.positive.values()) + sum(sketch.negative.values())
        return sketch

    def __eq__(self, other) -> bool:
        if not isinstance(other, QuantileSketch):
            return NotImplemented
        return (
            math.isclose(self.relative_accuracy, other.relative_accuracy)
            and self.positive == other.positive
            and self.negative == other.negative
            and self.zero_count == other.zero_count
        )

    def __repr__(self) -> str:
        return f"QuantileSketch(count={self.count}, bins={len(self.positive) + len(self.negative)})"
