from __future__ import annotations

from fastapi import APIRouter, Depends

from fieldops import __version__
from fieldops.api.dependencies.auth import get_access
from fieldops.meta_engine.bootstrap import AccessControl

router = APIRouter(tags=["system"])


@router.get("/health")
def health(access: AccessControl = Depends(get_access)) -> dict:
    status = access.hierarchy.status()
    return {
        "ok": status["is_ready"],
        "service": "fieldops",
        "version": __version__,
        "roles": status,
        "entities": access.registry.names(),
        "permission_matrix_version": access.matrix.hierarchy_version,
    }
