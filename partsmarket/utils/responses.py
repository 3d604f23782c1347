from __future__ import annotations

from flask import jsonify

from partsmarket.utils.observability import get_request_id


def json_error(error: str, message: str, status: int, **extra):
    payload = {
        "ok": False,
        "error": error,
        "message": message,
        "status": int(status),
    }
    payload.update({k: v for k, v in extra.items() if v is not None})
    rid = (get_request_id() or "").strip()
    if rid:
        payload["trace_id"] = rid
    return jsonify(payload), int(status)


def result_response(result, render=None, *, status: int = 200):
    """Translate a ServiceResult into the JSON API contract."""
    if not result.ok:
        return json_error(result.error, result.message, result.http_status, details=result.details or None)
    body = {"ok": True}
    if render is not None:
        body.update(render(result.value))
    return jsonify(body), status


def page_values(args, *, default_limit: int = 20) -> tuple[int, int]:
    try:
        limit = int(args.get("limit") or default_limit)
    except (TypeError, ValueError):
        limit = default_limit
    try:
        offset = int(args.get("offset") or 0)
    except (TypeError, ValueError):
        offset = 0
    if limit < 1:
        limit = 1
    if limit > 100:
        limit = 100
    if offset < 0:
        offset = 0
    return limit, offset


def page_body(page: dict, render) -> dict:
    return {
        "items": [render(row) for row in page["items"]],
        "total": int(page["total"]),
        "limit": int(page["limit"]),
        "offset": int(page["offset"]),
    }
