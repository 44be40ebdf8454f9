"""
Allele frequency spectra and universes.

Notation (shared with event expressions):
    0.5          a single point
    [0.0,0.1]    closed interval
    ]0.0,0.1]    left-open interval
    [0.1,0.3[    right-open interval
    ]0.0,1.0[    open interval
    a | b | c    union (universe only)
"""

import re
from dataclasses import dataclass
from typing import Iterable, List, Tuple, Union

import numpy as np

from .errors import ScenarioConfigError


# Absolute tolerance for VAF equality; grid values are exact rationals or
# quadrature nodes, so anything closer than this is the same point.
VAF_EPS = 1e-9

_NUMBER = r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?"
_RANGE_RE = re.compile(rf"\s*([\[\]])\s*({_NUMBER})\s*,\s*({_NUMBER})\s*([\[\]])")
_POINT_RE = re.compile(rf"\s*({_NUMBER})")


@dataclass(frozen=True)
class VAFPoint:
    """A single allele frequency."""

    value: float

    def __post_init__(self):
        if not 0.0 <= self.value <= 1.0:
            raise ScenarioConfigError(f"allele frequency {self.value} outside [0, 1]")

    def contains(self, vafs: np.ndarray) -> np.ndarray:
        return np.abs(np.asarray(vafs, dtype=float) - self.value) <= VAF_EPS

    def breakpoints(self) -> Tuple[float, ...]:
        return (self.value,)

    def __str__(self) -> str:
        return f"{self.value:g}"


@dataclass(frozen=True)
class VAFRange:
    """An interval of allele frequencies with independently open or closed bounds."""

    start: float
    end: float
    left_exclusive: bool = False
    right_exclusive: bool = False

    def __post_init__(self):
        if not 0.0 <= self.start <= self.end <= 1.0:
            raise ScenarioConfigError(
                f"invalid allele frequency range {self}: bounds must satisfy 0 <= start <= end <= 1"
            )
        if self.start == self.end and (self.left_exclusive or self.right_exclusive):
            raise ScenarioConfigError(f"allele frequency range {self} is empty")

    @property
    def is_degenerate(self) -> bool:
        return self.start == self.end

    def contains(self, vafs: np.ndarray) -> np.ndarray:
        vafs = np.asarray(vafs, dtype=float)
        if self.left_exclusive:
            lower = vafs > self.start + VAF_EPS
        else:
            lower = vafs >= self.start - VAF_EPS
        if self.right_exclusive:
            upper = vafs < self.end - VAF_EPS
        else:
            upper = vafs <= self.end + VAF_EPS
        return lower & upper

    def breakpoints(self) -> Tuple[float, ...]:
        return (self.start, self.end)

    def __str__(self) -> str:
        left = "]" if self.left_exclusive else "["
        right = "[" if self.right_exclusive else "]"
        return f"{left}{self.start:g},{self.end:g}{right}"


VAFSpectrum = Union[VAFPoint, VAFRange]


def parse_spectrum(text: str, pos: int = 0) -> Tuple[VAFSpectrum, int]:
    """
    Parse a point or range starting at ``pos``.

    Returns
    -------
    tuple[VAFSpectrum, int]
        The spectrum and the position right after it.
    """
    m = _RANGE_RE.match(text, pos)
    if m is not None:
        left, start, end, right = m.groups()
        spectrum = VAFRange(
            start=float(start),
            end=float(end),
            left_exclusive=left == "]",
            right_exclusive=right == "[",
        )
        return spectrum, m.end()
    m = _POINT_RE.match(text, pos)
    if m is not None:
        return VAFPoint(float(m.group(1))), m.end()
    raise ScenarioConfigError(
        f"expected allele frequency or range at position {pos} in {text!r}"
    )


def _merge(intervals: Iterable[Tuple[float, float]]) -> List[Tuple[float, float]]:
    merged: List[Tuple[float, float]] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


@dataclass(frozen=True)
class VAFUniverse:
    """
    Declared support of a sample's allele frequency: a union of points and ranges.
    """

    components: Tuple[VAFSpectrum, ...]

    def __post_init__(self):
        if not self.components:
            raise ScenarioConfigError("universe must not be empty")

    @classmethod
    def parse(cls, text: str) -> "VAFUniverse":
        """Parse e.g. ``"[0.0,0.1] | 0.5 | 1.0"``."""
        components = []
        for part in str(text).split("|"):
            spectrum, end = parse_spectrum(part)
            if part[end:].strip():
                raise ScenarioConfigError(f"unexpected trailing input in universe {text!r}")
            components.append(spectrum)
        return cls(tuple(components))

    @classmethod
    def full(cls) -> "VAFUniverse":
        return cls((VAFRange(0.0, 1.0),))

    def contains(self, vafs: np.ndarray) -> np.ndarray:
        vafs = np.asarray(vafs, dtype=float)
        mask = np.zeros(vafs.shape, dtype=bool)
        for component in self.components:
            mask |= component.contains(vafs)
        return mask

    def points(self) -> np.ndarray:
        """Explicit point values (including degenerate ranges), sorted and unique."""
        values = [
            c.value if isinstance(c, VAFPoint) else c.start
            for c in self.components
            if isinstance(c, VAFPoint) or c.is_degenerate
        ]
        return np.unique(np.asarray(values, dtype=float))

    def intervals(self) -> List[Tuple[float, float]]:
        """Non-degenerate ranges as merged (start, end) pairs."""
        return _merge(
            (c.start, c.end)
            for c in self.components
            if isinstance(c, VAFRange) and not c.is_degenerate
        )

    @property
    def is_discrete(self) -> bool:
        return not self.intervals()

    def segments(self, breakpoints: Iterable[float]) -> List[Tuple[float, float]]:
        """
        Continuous part of the universe, split at the given breakpoints so
        that no segment straddles one of them.
        """
        cuts = sorted(set(float(b) for b in breakpoints))
        segments = []
        for start, end in self.intervals():
            inner = [b for b in cuts if start < b < end]
            bounds = [start] + inner + [end]
            segments.extend(zip(bounds[:-1], bounds[1:]))
        return segments

    def __str__(self) -> str:
        return " | ".join(str(c) for c in self.components)
