"""Whole-form graph helpers: order-based default wiring and loop detection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from flowform.blocks import Block, live_blocks
from flowform.workflow.conditions import Connection

logger = logging.getLogger("flowform.workflow")


def _default_connection(source: Block, target: Block, order_index: int) -> Connection:
    return Connection(
        form_id=source.form_id,
        source_id=source.id,
        default_target_id=target.id,
        order_index=order_index,
        rules=[],
        is_explicit=False,
    )


def auto_connect(
    blocks: Iterable[Block],
    connections: Iterable[Connection],
    target_block_id: Optional[str] = None,
) -> List[Connection]:
    """
    Return the connection list with default edges between adjacent blocks.

    With `target_block_id` (a block that was just inserted) only its two
    neighbouring edges are considered, and only for blocks that have no outgoing
    connection yet. Without it, every non-explicit rule-less connection between
    two of `blocks` is rebuilt from order. Explicit and rule-based connections
    are always preserved.
    """
    ordered = sorted(live_blocks(blocks), key=lambda b: b.order_index)
    out = list(connections)
    if len(ordered) < 2:
        return out

    def has_outgoing(block_id: str) -> bool:
        return any(c.source_id == block_id for c in out)

    if target_block_id:
        idx = next((i for i, b in enumerate(ordered) if b.id == target_block_id), -1)
        if idx < 0:
            logger.info("auto_connect: block %s not found", target_block_id)
            return out
        pairs: List[Tuple[Block, Block]] = []
        if idx > 0:
            pairs.append((ordered[idx - 1], ordered[idx]))
        if idx < len(ordered) - 1:
            pairs.append((ordered[idx], ordered[idx + 1]))
        for src, dst in pairs:
            if not has_outgoing(src.id):
                out.append(_default_connection(src, dst, len(out)))
        return out

    ids = {b.id for b in ordered}
    out = [
        c
        for c in out
        if c.is_explicit or c.rules or not (c.source_id in ids and c.default_target_id in ids)
    ]
    added = 0
    for src, dst in zip(ordered, ordered[1:]):
        taken = any(
            c.source_id == src.id and (c.default_target_id == dst.id or c.rules or c.is_explicit) for c in out
        )
        if not taken:
            out.append(_default_connection(src, dst, len(out)))
            added += 1
    logger.debug("auto_connect: %d blocks, %d default connections added", len(ordered), added)
    return out


@dataclass
class CycleReport:
    cycle_connections: List[str] = field(default_factory=list)

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycle_connections)


def detect_cycles(blocks: Iterable[Block], connections: Iterable[Connection]) -> CycleReport:
    """
    Depth-first search over default and rule targets.

    Every connection on a detected loop is reported, not only the back edge.
    """
    nodes = [b.id for b in blocks]
    graph: Dict[str, List[Tuple[str, str]]] = {n: [] for n in nodes}
    for conn in connections:
        if conn.source_id not in graph:
            continue
        targets = [conn.default_target_id] + [r.target_block_id for r in conn.rules]
        for t in targets:
            if t:
                graph[conn.source_id].append((t, conn.id))

    on_cycle: Set[str] = set()
    done: Set[str] = set()

    for root in nodes:
        if root in done:
            continue
        path: List[str] = [root]
        edges: List[str] = []
        depth: Dict[str, int] = {root: 0}
        stack = [iter(graph.get(root, []))]
        while stack:
            step = next(stack[-1], None)
            if step is None:
                stack.pop()
                node = path.pop()
                del depth[node]
                done.add(node)
                if edges:
                    edges.pop()
                continue
            target, conn_id = step
            if target in depth:
                on_cycle.update(edges[depth[target]:])
                on_cycle.add(conn_id)
                continue
            if target in done:
                continue
            depth[target] = len(path)
            path.append(target)
            edges.append(conn_id)
            stack.append(iter(graph.get(target, [])))

    if on_cycle:
        logger.info("Workflow has %d connection(s) on a cycle", len(on_cycle))
    return CycleReport(cycle_connections=sorted(on_cycle))


__all__ = ["auto_connect", "detect_cycles", "CycleReport"]
