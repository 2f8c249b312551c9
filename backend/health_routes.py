from fastapi import APIRouter
from pydantic import BaseModel
from typing import Optional
import psutil
import sys
import os

from config import APP_NAME, APP_VERSION
from log_context import set_component

router = APIRouter(prefix="/health", tags=["health"])


class SystemInfo(BaseModel):
    python_version: str
    platform: str
    cpu_count: int
    memory_used_percent: float
    disk_used_percent: float
    load_average: Optional[tuple]


@router.get("")
async def health():
    set_component("API:health")
    return {"status": "ok", "name": APP_NAME, "version": APP_VERSION}


@router.get("/system-info", response_model=SystemInfo)
async def get_system_info():
    """Host resource snapshot."""
    set_component("API:health.system-info")
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage('/')

    load_average = None
    try:
        if hasattr(os, 'getloadavg'):
            load_average = os.getloadavg()
    except (OSError, AttributeError):
        pass

    return SystemInfo(
        python_version=sys.version,
        platform=sys.platform,
        cpu_count=psutil.cpu_count() or 1,
        memory_used_percent=round(memory.percent, 2),
        disk_used_percent=round((disk.used / disk.total) * 100, 2) if disk.total else 0.0,
        load_average=load_average,
    )
