"""Built-in diversity and similarity indices.

Diversity functions take one vector of clonotype counts and return a scalar.
Similarity functions take two count vectors aligned over the same clonotypes
(zero where a clonotype is absent) and return a scalar.

The registries are read-only; callers pass their own mapping to override or
extend them for a single call.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Callable, Dict, Mapping, Sequence

import numpy as np
from scipy.stats import entropy

DiversityFunc = Callable[[Sequence[float]], float]
SimilarityFunc = Callable[[Sequence[float], Sequence[float]], float]


def _counts(values: Sequence[float]) -> np.ndarray:
    counts = np.asarray(values, dtype=float)
    return counts[counts > 0]


def shannon(counts: Sequence[float]) -> float:
    """Shannon entropy (natural log)."""
    counts = _counts(counts)
    if counts.size == 0:
        return 0.0
    return float(entropy(counts))


def simpson(counts: Sequence[float]) -> float:
    """Gini-Simpson index, 1 - sum(p^2)."""
    counts = _counts(counts)
    total = counts.sum()
    if total == 0:
        return 0.0
    proportions = counts / total
    return float(1.0 - np.square(proportions).sum())


def inv_simpson(counts: Sequence[float]) -> float:
    counts = _counts(counts)
    total = counts.sum()
    if total == 0:
        return 0.0
    return float(1.0 / np.square(counts / total).sum())


def gini(counts: Sequence[float]) -> float:
    """Gini coefficient of clonotype sizes; 0 for a perfectly even repertoire."""
    counts = np.sort(_counts(counts))
    n = counts.size
    total = counts.sum()
    if n == 0 or total == 0:
        return 0.0
    index = np.arange(1, n + 1)
    return float(np.sum((2 * index - n - 1) * counts) / (n * total))


def richness(counts: Sequence[float]) -> float:
    return float(_counts(counts).size)


def pielou(counts: Sequence[float]) -> float:
    """Pielou evenness, Shannon entropy over log(richness)."""
    n = _counts(counts).size
    if n <= 1:
        return 0.0
    return shannon(counts) / float(np.log(n))


def _presence(a: Sequence[float], b: Sequence[float]):
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    if a.shape != b.shape:
        raise ValueError(f"Count vectors differ in length: {a.shape[0]} != {b.shape[0]}")
    return a > 0, b > 0


def jaccard(a: Sequence[float], b: Sequence[float]) -> float:
    """Shared clonotypes over the union of clonotypes."""
    in_a, in_b = _presence(a, b)
    union = np.sum(in_a | in_b)
    if union == 0:
        return 0.0
    return float(np.sum(in_a & in_b) / union)


def sorensen(a: Sequence[float], b: Sequence[float]) -> float:
    in_a, in_b = _presence(a, b)
    denominator = in_a.sum() + in_b.sum()
    if denominator == 0:
        return 0.0
    return float(2 * np.sum(in_a & in_b) / denominator)


def overlap(a: Sequence[float], b: Sequence[float]) -> float:
    """Overlap coefficient, shared clonotypes over the smaller repertoire."""
    in_a, in_b = _presence(a, b)
    smaller = min(in_a.sum(), in_b.sum())
    if smaller == 0:
        return 0.0
    return float(np.sum(in_a & in_b) / smaller)


def morisita_horn(a: Sequence[float], b: Sequence[float]) -> float:
    """Morisita-Horn similarity between two abundance distributions."""
    _presence(a, b)
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    n1 = a.sum()
    n2 = b.sum()
    if n1 == 0 or n2 == 0:
        return 0.0

    lambda1 = np.square(a).sum() / (n1 * n1)
    lambda2 = np.square(b).sum() / (n2 * n2)
    denominator = (lambda1 + lambda2) * n1 * n2
    if denominator == 0:
        return 0.0
    return float(2 * np.dot(a, b) / denominator)


DIVERSITY_METRICS: Mapping[str, DiversityFunc] = MappingProxyType(
    {
        "shannon": shannon,
        "simpson": simpson,
        "inv_simpson": inv_simpson,
        "gini": gini,
        "richness": richness,
        "pielou": pielou,
    }
)

DEFAULT_DIVERSITY = ("shannon", "simpson", "inv_simpson", "gini")

SIMILARITY_METRICS: Mapping[str, SimilarityFunc] = MappingProxyType(
    {
        "jaccard": jaccard,
        "sorensen": sorensen,
        "morisita_horn": morisita_horn,
        "overlap": overlap,
    }
)

DEFAULT_SIMILARITY = ("jaccard", "morisita_horn")


def resolve_methods(method, registry: Mapping[str, Callable], defaults: Sequence[str]) -> Dict[str, Callable]:
    """Normalise a metric argument into an ordered ``name -> callable`` dict.

    ``method`` may be None (built-in defaults), a registry name, a callable,
    or a mapping / sequence of names and callables.
    """
    if method is None:
        return {name: registry[name] for name in defaults}
    if isinstance(method, str) or callable(method):
        method = [method]
    if isinstance(method, Mapping):
        items = list(method.items())
    else:
        items = [(m if isinstance(m, str) else getattr(m, "__name__", "metric"), m) for m in method]

    resolved: Dict[str, Callable] = {}
    for name, func in items:
        if isinstance(func, str):
            if func not in registry:
                raise ValueError(f"Unknown metric '{func}'; available: {sorted(registry)}")
            func = registry[func]
        if not callable(func):
            raise TypeError(f"Metric '{name}' is not callable")
        resolved[name] = func
    if not resolved:
        raise ValueError("No metric functions given")
    return resolved
