"""Pytree helper functions.

This is where the small utilities live that every per-sequence batch code path
needs:
- stacking a list of per-sequence pytrees into one batched pytree (and back)
- zero trees and tree sums for gradient bookkeeping
- parameter counts and closeness checks

Keep it minimal: this is not a generic library.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import jax
import jax.numpy as jnp


def tree_stack(items: Sequence[Any]) -> Any:
    """Stack per-sequence pytrees along a new leading batch axis.

    :param items: Non-empty list of pytrees with identical structure.
    :return Any: One pytree whose leaves have shape ``[len(items), ...]``.
    """
    return jax.tree_util.tree_map(lambda *xs: jnp.stack(xs), *items)


def tree_unstack(tree: Any, n: int) -> list[Any]:
    """Inverse of `tree_stack`: slice the leading axis into ``n`` pytrees."""
    return [jax.tree_util.tree_map(lambda x, i=i: x[i], tree) for i in range(n)]


def tree_zeros_like(tree: Any) -> Any:
    return jax.tree_util.tree_map(jnp.zeros_like, tree)


def tree_add(a: Any, b: Any) -> Any:
    return jax.tree_util.tree_map(lambda x, y: x + y, a, b)


def param_count(params: Any) -> int:
    """Count total number of scalar parameters in a params pytree.

    :param Any params: Parameter pytree.
    :return int: Total number of scalar parameters.
    """

    leaves = jax.tree_util.tree_leaves(params)
    total = 0
    for x in leaves:
        if hasattr(x, "size"):
            total += int(x.size)
    return total


def tree_allclose(a: Any, b: Any, *, rtol: float = 1e-6, atol: float = 1e-6) -> bool:
    """Tree-wise allclose for arrays.

    :param Any a: First pytree.
    :param Any b: Second pytree.
    :param float rtol: Relative tolerance.
    :param float atol: Absolute tolerance.
    :return bool: True if all arrays are element-wise close.
    """

    la, ta = jax.tree_util.tree_flatten(a)
    lb, tb = jax.tree_util.tree_flatten(b)
    if ta != tb or len(la) != len(lb):
        return False
    for xa, xb in zip(la, lb, strict=True):
        if hasattr(xa, "shape") and hasattr(xb, "shape"):
            if xa.shape != xb.shape:
                return False
            if not jnp.allclose(xa, xb, rtol=rtol, atol=atol):
                return False
        else:
            if xa != xb:
                return False
    return True
