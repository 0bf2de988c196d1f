# Copyright (c) 2025.
# This file is part of epigraph, released under the MIT License.
"""
Variable store: keyed manifold values.

`Values` maps integer keys to JAX arrays together with a variable type that
selects the manifold model (see `slam.manifold`). JAX arrays are immutable,
so copying a `Values` produces an independent snapshot; the optimizer relies
on this to roll back rejected steps without manual undo.
"""

from __future__ import annotations

from typing import Dict, Iterator, List, Mapping, Optional, Tuple

import jax
import jax.numpy as jnp
import numpy as np

from epigraph.core.errors import DuplicateKey, UnknownKey
from epigraph.core.types import NodeId
from epigraph.slam import manifold as mf

_retract = jax.jit(mf.retract, static_argnums=0)
_local = jax.jit(mf.local_coordinates, static_argnums=0)


class Values:
    """Mapping from variable id to manifold value."""

    def __init__(self) -> None:
        self._values: Dict[NodeId, jnp.ndarray] = {}
        self._types: Dict[NodeId, str] = {}

    # --- construction ---

    def insert(self, key: int, value, var_type: Optional[str] = None) -> None:
        """
        Add a new variable.

        Raises DuplicateKey if `key` is already present. When `var_type` is
        omitted it is inferred from the shape of `value`.
        """
        key = NodeId(int(key))
        if key in self._values:
            raise DuplicateKey(key)
        value = jnp.asarray(value, dtype=jnp.float64)
        if var_type is None:
            var_type = mf.infer_var_type(value)
        mf.check_value(mf.get_manifold_for_var_type(var_type), value)
        self._values[key] = value
        self._types[key] = var_type

    def update(self, key: int, value) -> None:
        """Replace the value of an existing variable, keeping its type."""
        key = NodeId(int(key))
        if key not in self._values:
            raise UnknownKey(key)
        value = jnp.asarray(value, dtype=jnp.float64)
        mf.check_value(self.manifold(key), value)
        self._values[key] = value

    def copy(self) -> "Values":
        out = Values()
        out._values = dict(self._values)
        out._types = dict(self._types)
        return out

    # --- access ---

    def at(self, key: int) -> jnp.ndarray:
        try:
            return self._values[NodeId(int(key))]
        except KeyError:
            raise UnknownKey(key) from None

    __getitem__ = at

    def exists(self, key: int) -> bool:
        return NodeId(int(key)) in self._values

    __contains__ = exists

    def var_type(self, key: int) -> str:
        try:
            return self._types[NodeId(int(key))]
        except KeyError:
            raise UnknownKey(key) from None

    def manifold(self, key: int) -> str:
        return mf.get_manifold_for_var_type(self.var_type(key))

    def dim(self, key: int) -> int:
        """Tangent-space dimension of a variable."""
        return mf.tangent_dim(self.manifold(key), self.at(key))

    def keys(self) -> List[NodeId]:
        return sorted(self._values)

    def items(self):
        for key in self.keys():
            yield key, self._values[key]

    def __iter__(self) -> Iterator[NodeId]:
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Values({', '.join(f'{k}:{self._types[k]}' for k in self.keys())})"

    # --- manifold operations ---

    def retract(self, key: int, delta) -> jnp.ndarray:
        """Return value(key) ⊕ delta. The store itself is not modified."""
        delta = jnp.asarray(delta, dtype=jnp.float64)
        if delta.shape != (self.dim(key),):
            raise ValueError(
                f"delta for variable {key} must have shape ({self.dim(key)},), got {delta.shape}"
            )
        return _retract(self.manifold(key), self.at(key), delta)

    def local_coordinates(self, key: int, other) -> jnp.ndarray:
        """Tangent vector at value(key) that reaches `other`."""
        other = jnp.asarray(other, dtype=jnp.float64)
        mf.check_value(self.manifold(key), other)
        return _local(self.manifold(key), self.at(key), other)

    def retract_all(self, delta, index: Mapping[NodeId, Tuple[int, int]]) -> "Values":
        """
        New Values with every variable in `index` retracted by its block of
        the flat tangent vector `delta`. Variables not in `index` are carried
        over unchanged.
        """
        delta = np.asarray(delta, dtype=np.float64)
        out = self.copy()
        for key, (start, dim) in index.items():
            out._values[key] = _retract(
                self.manifold(key), self.at(key), jnp.asarray(delta[start:start + dim])
            )
        return out

    def local_coordinates_to(self, other: "Values") -> Dict[NodeId, np.ndarray]:
        """Per-key tangent vectors from these values to `other`."""
        return {
            key: np.asarray(self.local_coordinates(key, other.at(key)))
            for key in self.keys()
        }
