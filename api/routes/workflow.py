from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Request

from api.models import AutoConnectRequest, ConnectionPatchRequest, NextBlockRequest
from flowform.errors import ConditionValidationError, NotFound
from flowform.persistence import ApplyConnectionUpdate, FormStore, PersistenceQueue
from flowform.workflow.engine import MalformedCondition, resolve_with_order_fallback
from flowform.workflow.graph import auto_connect, detect_cycles

router = APIRouter(prefix="/v1/api", tags=["workflow"])

logger = logging.getLogger("flowform.workflow")


def _store(request: Request) -> FormStore:
    return request.app.state.store


@router.post("/forms/{formId}/next-block")
async def next_block(formId: str, body: NextBlockRequest, request: Request) -> Dict[str, Any]:
    store = _store(request)
    blocks = store.list_blocks(formId)
    if not any(b.id == body.source_block_id for b in blocks):
        raise NotFound(f"block {body.source_block_id} not found in form {formId}")
    connections = store.list_connections(formId)

    diagnostics: List[MalformedCondition] = []
    res = resolve_with_order_fallback(
        body.source_block_id, blocks, connections, body.answers, diagnostics=diagnostics
    )
    out: Dict[str, Any] = {
        "ok": True,
        "targetBlockId": res.target_block_id,
        "resolvedBy": res.resolved_by,
        "ruleId": res.rule_id,
    }
    if diagnostics:
        out["diagnostics"] = [
            {"conditionId": d.condition_id, "field": d.field, "operator": d.operator, "reason": d.reason}
            for d in diagnostics
        ]
    return out


@router.patch("/connections/{connectionId}")
async def patch_connection(connectionId: str, body: ConnectionPatchRequest, request: Request) -> Dict[str, Any]:
    store = _store(request)
    fields = body.fields()

    existing = store.get_connection(connectionId)
    source_id = fields.get("source_id") or (existing.source_id if existing else None)
    targets = [fields.get("default_target_id")] + [r.get("target_block_id") for r in fields.get("rules") or []]
    if source_id and source_id in targets:
        raise ConditionValidationError("a block cannot target itself", details={"sourceId": source_id})

    queue = PersistenceQueue()
    queue.enqueue(ApplyConnectionUpdate(connection_id=connectionId, fields=fields))
    report = queue.flush(store)
    if not report.ok:
        assert report.error is not None
        raise report.error
    updated = store.get_connection(connectionId)
    return {"ok": True, "connection": updated.model_dump(mode="json", by_alias=True) if updated else None}


@router.get("/forms/{formId}/workflow/cycles")
async def workflow_cycles(formId: str, request: Request) -> Dict[str, Any]:
    store = _store(request)
    report = detect_cycles(store.list_blocks(formId), store.list_connections(formId))
    return {"ok": True, "hasCycles": report.has_cycles, "cycleConnections": report.cycle_connections}


@router.post("/forms/{formId}/workflow/auto-connect")
async def workflow_auto_connect(formId: str, body: AutoConnectRequest, request: Request) -> Dict[str, Any]:
    """
    Wire default order-based connections.

    Rebuilt defaults reuse the row of the stale default they replace, so a
    source block never ends up with two connections.
    """
    store = _store(request)
    blocks = store.list_blocks(formId)
    before = store.list_connections(formId)
    after = auto_connect(blocks, before, target_block_id=body.target_block_id)

    before_ids = {c.id for c in before}
    after_ids = {c.id for c in after}
    stale = {c.source_id: c for c in before if c.id not in after_ids}

    queue = PersistenceQueue()
    written: List[str] = []
    for conn in after:
        if conn.id in before_ids:
            continue
        fields = conn.model_dump(mode="json")
        fields.pop("id", None)
        old = stale.pop(conn.source_id, None)
        conn_id = old.id if old is not None else conn.id
        queue.enqueue(ApplyConnectionUpdate(connection_id=conn_id, fields=fields))
        written.append(conn_id)
    for old in stale.values():
        queue.enqueue(ApplyConnectionUpdate(connection_id=old.id, fields={"default_target_id": None}))
        written.append(old.id)

    report = queue.flush(store)
    if not report.ok:
        assert report.error is not None
        raise report.error
    logger.info("auto-connect on form %s wrote %d connection(s)", formId, len(written))
    connections = [store.get_connection(cid) for cid in written]
    return {"ok": True, "connections": [c.model_dump(mode="json", by_alias=True) for c in connections if c]}
