"""Reference (globally enriched) spaces for error estimation."""

from __future__ import annotations

import logging
from typing import Sequence

from .space import H1Space

log = logging.getLogger(__name__)


def construct_refined_spaces(spaces: Sequence[H1Space], order_increase: int = 1) -> list[H1Space]:
    """Copy each distinct mesh, refine it uniformly, and raise the orders.

    Components sharing a coarse mesh share the reference mesh too.
    """
    if order_increase < 0:
        raise ValueError(f"order_increase must be >= 0, got {order_increase}")
    ref_meshes = {}
    ref_spaces = []
    for space in spaces:
        key = id(space.mesh)
        if key not in ref_meshes:
            ref_mesh = space.mesh.copy()
            ref_mesh.refine_all_elements()
            ref_meshes[key] = ref_mesh
        ref = space.duplicate_onto(ref_meshes[key])
        ref.copy_orders(space, order_increase)
        ref_spaces.append(ref)
    log.debug(
        f"Reference spaces: {[s.get_num_dofs() for s in ref_spaces]} DOFs "
        f"(coarse {[s.get_num_dofs() for s in spaces]})"
    )
    return ref_spaces
