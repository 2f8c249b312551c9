from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

LATEST = "latest"


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class LoaderInfo(_Model):
    name: str = ""
    version: str = ""


class FileEntry(_Model):
    path: str
    sha256: str
    size: int


class PackageDescriptor(_Model):
    """Identity of a nested mod archive. ``None`` means the field was not determined."""

    path: str
    id: Optional[str] = None
    version: Optional[str] = None
    name: Optional[str] = None
    loader: Optional[str] = None


class Manifest(_Model):
    pack_id: str
    version: str = LATEST
    display_name: Optional[str] = None
    mc_version: Optional[str] = None
    loader: Optional[LoaderInfo] = None
    files: tuple[FileEntry, ...] = ()
    mods: Optional[tuple[PackageDescriptor, ...]] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    channel: Optional[str] = None
    description: Optional[str] = None

    def to_wire(self) -> dict[str, Any]:
        # mods are served separately; the key is dropped rather than sent as null
        exclude = {"mods"} if self.mods is None else None
        return self.model_dump(mode="json", by_alias=True, exclude=exclude)


class ClientFileState(_Model):
    path: str
    sha256: Optional[str] = None
    size: Optional[int] = None


class FileOp(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"
    KEEP = "keep"


class DiffOperation(_Model):
    path: str
    op: FileOp
    sha256: Optional[str] = None
    size: Optional[int] = None


class DiffRequest(_Model):
    files: Optional[list[ClientFileState]] = None


class DiffResponse(_Model):
    pack_id: str
    version: str
    operations: tuple[DiffOperation, ...] = ()


class BundleRequest(_Model):
    paths: Optional[list[str]] = None


class PackSummary(_Model):
    pack_id: str
    latest_version: str
    versions: tuple[str, ...] = ()


class PackMeta(_Model):
    display_name: Optional[str] = None
    mc_version: Optional[str] = None
    loader_name: Optional[str] = None
    loader_version: Optional[str] = None
    channel: Optional[str] = None
    description: Optional[str] = None


def with_overrides(base: _Model, **changes: Any):
    """Return a copy of ``base`` with ``changes`` applied; ``None`` values are ignored."""
    update = {k: v for k, v in changes.items() if v is not None}
    if not update:
        return base
    return base.model_copy(update=update)
