"""Ordered parameter schema shared by every vector and matrix in an inversion.

Each parameter is declared once with a name, a shape and a tag. The schema
fixes one flattening order (declaration order, row-major within a
parameter); rows and columns of all Jacobians and covariances follow it.
Prior variances are assigned per tag rather than by matching names.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Tuple

import numpy as np

from .exceptions import MalformedInputError


@dataclass(frozen=True)
class ParameterSpec:
    name: str
    shape: Tuple[int, ...]
    tag: str

    @property
    def size(self) -> int:
        return int(np.prod(self.shape, dtype=int))


class ParameterSchema:
    """Fixed, ordered list of named parameters."""

    def __init__(self, specs: Iterable[ParameterSpec]):
        self.specs = tuple(specs)
        names = [s.name for s in self.specs]
        if len(set(names)) != len(names):
            raise MalformedInputError(f"duplicate parameter names in {names}")
        self._slices: Dict[str, slice] = {}
        start = 0
        for s in self.specs:
            self._slices[s.name] = slice(start, start + s.size)
            start += s.size
        self.size = start

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(s.name for s in self.specs)

    @property
    def tags(self) -> Tuple[str, ...]:
        return tuple(dict.fromkeys(s.tag for s in self.specs))

    def slice_of(self, name: str) -> slice:
        return self._slices[name]

    def indices(self, tag: str) -> np.ndarray:
        """Flat indices of every parameter carrying `tag`."""
        idx = [np.arange(self.size)[self._slices[s.name]] for s in self.specs if s.tag == tag]
        return np.concatenate(idx) if idx else np.zeros(0, int)

    def flatten(self, values: Mapping[str, np.ndarray]) -> np.ndarray:
        """Concatenate a name -> value mapping into one flat vector."""
        missing = [n for n in self.names if n not in values]
        if missing:
            raise MalformedInputError(f"missing parameters: {missing}")
        out = np.empty(self.size, float)
        for s in self.specs:
            v = np.asarray(values[s.name], float)
            if v.size != s.size:
                raise MalformedInputError(
                    f"parameter '{s.name}' has {v.size} entries, expected shape {s.shape}"
                )
            out[self._slices[s.name]] = v.ravel()
        return out

    def unflatten(self, vector: np.ndarray) -> Dict[str, np.ndarray]:
        """Inverse of :meth:`flatten`; returns copies shaped per spec."""
        vector = np.asarray(vector, float)
        if vector.shape != (self.size,):
            raise MalformedInputError(
                f"parameter vector has shape {vector.shape}, expected ({self.size},)"
            )
        return {s.name: vector[self._slices[s.name]].reshape(s.shape).copy() for s in self.specs}

    def tag_vector(self, values_by_tag: Mapping[str, float]) -> np.ndarray:
        """Flat vector holding one value per tag (e.g. prior variances)."""
        unknown = set(values_by_tag) - set(self.tags)
        if unknown:
            raise MalformedInputError(f"unknown tags: {sorted(unknown)}")
        out = np.zeros(self.size, float)
        for s in self.specs:
            out[self._slices[s.name]] = float(values_by_tag.get(s.tag, 0.0))
        return out

    def __len__(self) -> int:
        return self.size

    def __repr__(self) -> str:
        inner = ", ".join(f"{s.name}{list(s.shape)}:{s.tag}" for s in self.specs)
        return f"ParameterSchema({inner})"
