from __future__ import annotations
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import FileResponse, StreamingResponse
from typing import Optional
import logging

from errors import ErrorKind, Outcome, PackError
from log_context import set_component
from pack_models import BundleRequest, DiffRequest
from pack_service import PackService, iter_chunks

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/packs", tags=["packs"])

_service: Optional[PackService] = None

_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.VALIDATION: 400,
}


def get_pack_service() -> PackService:
    global _service
    if _service is None:
        _service = PackService()
    return _service


def set_pack_service(service: PackService) -> None:
    global _service
    _service = service


def close_pack_service() -> None:
    global _service
    if _service is not None:
        _service.close()
        _service = None


def _http_error(outcome: Outcome) -> HTTPException:
    status = _STATUS.get(outcome.error, 500)
    if status == 500:
        logger.error(f"Request failed ({outcome.error.value}): {outcome.message}")
    return HTTPException(status_code=status, detail=outcome.message or outcome.error.value)


def _unwrap(outcome: Outcome):
    if outcome.ok:
        return outcome.value
    raise _http_error(outcome)


@router.get("/")
def list_packs(service: PackService = Depends(get_pack_service)):
    set_component("API:packs.list")
    return service.list_pack_ids()


@router.get("/{pack_id}")
def get_pack(pack_id: str, service: PackService = Depends(get_pack_service)):
    set_component("API:packs.summary")
    summary = service.get_summary(pack_id)
    if summary is None:
        raise HTTPException(status_code=404, detail=f"Pack '{pack_id}' not found")
    return summary.to_wire()


@router.get("/{pack_id}/manifest")
def get_manifest(pack_id: str, version: Optional[str] = Query(None), service: PackService = Depends(get_pack_service)):
    set_component("API:packs.manifest")
    return _unwrap(service.get_manifest(pack_id, version)).to_wire()


@router.get("/{pack_id}/mods")
def get_mods(pack_id: str, service: PackService = Depends(get_pack_service)):
    set_component("API:packs.mods")
    return [m.to_wire() for m in _unwrap(service.get_mods(pack_id))]


@router.get("/{pack_id}/file")
def get_file(pack_id: str, path: str = Query(...), service: PackService = Depends(get_pack_service)):
    set_component("API:packs.file")
    full = service.resolve_file(pack_id, path)
    if full is None:
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(full, media_type="application/octet-stream", filename=full.name)


@router.post("/{pack_id}/diff")
def diff_pack(pack_id: str, payload: DiffRequest, service: PackService = Depends(get_pack_service)):
    set_component("API:packs.diff")
    return _unwrap(service.diff(pack_id, payload.files or [])).to_wire()


@router.post("/{pack_id}/bundle")
def bundle_pack(pack_id: str, payload: Optional[BundleRequest] = None, service: PackService = Depends(get_pack_service)):
    set_component("API:packs.bundle")
    paths = payload.paths if payload else None
    try:
        spool = service.open_bundle(pack_id, paths)
    except PackError as e:
        raise _http_error(Outcome.from_exception(e))
    return StreamingResponse(
        iter_chunks(spool),
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{pack_id}.zip"'},
    )
