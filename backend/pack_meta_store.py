from __future__ import annotations
import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from config import PACK_META_FILENAME
from errors import PackIOError
from pack_models import PackMeta

logger = logging.getLogger(__name__)


def meta_path(pack_dir: Path) -> Path:
    return Path(pack_dir) / PACK_META_FILENAME


def read_pack_meta(pack_dir: Path) -> Optional[PackMeta]:
    path = meta_path(pack_dir)
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8-sig") or "{}")
        if not isinstance(data, dict):
            return None
        return PackMeta.model_validate(data)
    except (OSError, ValueError, ValidationError) as e:
        logger.warning(f"Ignoring unreadable {path}: {e}")
        return None


def write_pack_meta(pack_dir: Path, meta: PackMeta) -> None:
    path = meta_path(pack_dir)
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(json.dumps(meta.to_wire(), indent=2), encoding="utf-8")
        os.replace(tmp, path)
    except OSError as e:
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            pass
        raise PackIOError(f"Failed writing {path}: {e}") from e
