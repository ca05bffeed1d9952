"""Response envelope shared by the v1 routers."""

from typing import Any


def ok(data: Any, **extra: Any) -> dict[str, Any]:
    return {"success": True, "data": data, **extra}


def batch(results: list[dict[str, Any]], **extra: Any) -> dict[str, Any]:
    """Mixed per-item results; success only when every item succeeded."""
    return {"success": all(r.get("success", False) for r in results), "data": results, **extra}
