"""
Mod JAR Metadata Extraction
===========================
Reads identity metadata (id / version / display name / loader) from a mod
archive nested inside a pack. Recognized descriptor formats, in priority order:

1. fabric.mod.json          (top-level id / version / name)
2. quilt.mod.json           (quilt_loader.id / version, metadata.name)
3. META-INF/mods.toml       (Forge / NeoForge [[mods]] table)
4. mcmod.info               (legacy Forge, array or single object)
5. META-INF/maven/**/pom.properties
6. MANIFEST.MF Implementation-Version + filename heuristic

Every format is an independent parser. A parser that blows up is logged and
skipped; the first one yielding at least one of id/version/name wins.
"""

import json
import logging
import re
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from pack_models import PackageDescriptor

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════
#  Match Types (one per recognized descriptor format)
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class _Match:
    mod_id: Optional[str] = None
    version: Optional[str] = None
    name: Optional[str] = None

    loader = None

    def has_identity(self) -> bool:
        return bool(self.mod_id or self.version or self.name)

    def to_descriptor(self, rel_path: str) -> PackageDescriptor:
        return PackageDescriptor(
            path=rel_path,
            id=self.mod_id,
            version=self.version,
            name=self.name,
            loader=self.loader,
        )


@dataclass(frozen=True)
class FabricMatch(_Match):
    loader = "fabric"


@dataclass(frozen=True)
class QuiltMatch(_Match):
    loader = "quilt"


@dataclass(frozen=True)
class ModsTomlMatch(_Match):
    neoforge: bool = False

    @property
    def loader(self):  # type: ignore[override]
        return "neoforge" if self.neoforge else "forge"


@dataclass(frozen=True)
class McmodInfoMatch(_Match):
    loader = "forge"


@dataclass(frozen=True)
class PomPropertiesMatch(_Match):
    pass


@dataclass(frozen=True)
class FilenameGuess(_Match):
    pass


ModMatch = Union[FabricMatch, QuiltMatch, ModsTomlMatch, McmodInfoMatch, PomPropertiesMatch, FilenameGuess]


# ═══════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════

def _read_text(zf: zipfile.ZipFile, name: str) -> str:
    return zf.read(name).decode("utf-8-sig", errors="ignore")


def _str_or_none(value) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value


# ═══════════════════════════════════════════════════════════════
#  Format Parsers
# ═══════════════════════════════════════════════════════════════

def _parse_fabric(zf: zipfile.ZipFile, names: set[str], filename: str) -> Optional[ModMatch]:
    if "fabric.mod.json" not in names:
        return None
    data = json.loads(_read_text(zf, "fabric.mod.json"))
    if not isinstance(data, dict):
        return None
    return FabricMatch(
        mod_id=_str_or_none(data.get("id")),
        version=_str_or_none(data.get("version")),
        name=_str_or_none(data.get("name")),
    )


def _parse_quilt(zf: zipfile.ZipFile, names: set[str], filename: str) -> Optional[ModMatch]:
    if "quilt.mod.json" not in names:
        return None
    data = json.loads(_read_text(zf, "quilt.mod.json"))
    if not isinstance(data, dict):
        return None
    ql = data.get("quilt_loader")
    ql = ql if isinstance(ql, dict) else {}
    # metadata normally sits under quilt_loader, some jars put it at the root
    md = ql.get("metadata") if isinstance(ql.get("metadata"), dict) else data.get("metadata")
    md = md if isinstance(md, dict) else {}
    return QuiltMatch(
        mod_id=_str_or_none(ql.get("id")),
        version=_str_or_none(ql.get("version")),
        name=_str_or_none(md.get("name")),
    )


def _toml_value(raw: str) -> Optional[str]:
    """Parse the right-hand side of a ``key = value`` line from mods.toml.

    Handles single/double quotes, backslash-escaped quotes and an unquoted
    ``#`` starting an inline comment. Values still holding a ``${...}``
    template placeholder are discarded.
    """
    in_single = in_double = escape = False
    end = len(raw)
    for i, ch in enumerate(raw):
        if escape:
            escape = False
            continue
        if ch == "\\":
            if in_single or in_double:
                escape = True
            continue
        if ch == '"' and not in_single:
            in_double = not in_double
        elif ch == "'" and not in_double:
            in_single = not in_single
        elif ch == "#" and not in_single and not in_double:
            end = i
            break

    value = raw[:end].strip()
    if not value:
        return None
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        value = value[1:-1]
    if "${" in value:
        return None
    value = value.replace('\\"', '"')
    return value if value.strip() else None


def parse_mods_toml(text: str) -> tuple[Optional[str], Optional[str], Optional[str]]:
    """Return (modId, version, displayName) of the first [[mods]] record."""
    mod_id = version = name = None
    in_mods = False
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if stripped.startswith("["):
            if in_mods:
                break
            in_mods = stripped.lower().startswith("[[mods]]")
            continue
        if not in_mods or "=" not in stripped:
            continue
        key, raw = stripped.split("=", 1)
        key = key.strip().strip('"').lower()
        if key == "modid":
            mod_id = _toml_value(raw) or mod_id
        elif key == "version":
            version = _toml_value(raw) or version
        elif key in ("displayname", "name"):
            name = _toml_value(raw) or name
    return mod_id, version, name


def _parse_mods_toml(zf: zipfile.ZipFile, names: set[str], filename: str) -> Optional[ModMatch]:
    for toml_path in ("META-INF/mods.toml", "META-INF/neoforge.mods.toml"):
        if toml_path in names:
            mod_id, version, name = parse_mods_toml(_read_text(zf, toml_path))
            return ModsTomlMatch(
                mod_id=mod_id,
                version=version,
                name=name,
                neoforge=toml_path.endswith("neoforge.mods.toml"),
            )
    return None


def _parse_mcmod_info(zf: zipfile.ZipFile, names: set[str], filename: str) -> Optional[ModMatch]:
    if "mcmod.info" not in names:
        return None
    data = json.loads(_read_text(zf, "mcmod.info"))
    if isinstance(data, list):
        data = data[0] if data else None
    elif isinstance(data, dict) and isinstance(data.get("modList"), list):
        # modListVersion 2 wraps the records
        data = data["modList"][0] if data["modList"] else None
    if not isinstance(data, dict):
        return None
    return McmodInfoMatch(
        mod_id=_str_or_none(data.get("modid")),
        version=_str_or_none(data.get("version")),
        name=_str_or_none(data.get("name")),
    )


def _parse_pom_properties(zf: zipfile.ZipFile, names: set[str], filename: str) -> Optional[ModMatch]:
    entry = next(
        (n for n in zf.namelist()
         if n.lower().startswith("meta-inf/maven/") and n.lower().endswith("/pom.properties")),
        None,
    )
    if entry is None:
        return None
    artifact_id = version = name = None
    for line in _read_text(zf, entry).splitlines():
        if line.lstrip().startswith("#") or "=" not in line:
            continue
        key, val = line.split("=", 1)
        key = key.strip().lower()
        val = _blank_to_none(val.strip())
        if key == "version":
            version = val or version
        elif key == "artifactid":
            artifact_id = val or artifact_id
        elif key == "name":
            name = val or name
    return PomPropertiesMatch(mod_id=artifact_id, version=version, name=name)


# ═══════════════════════════════════════════════════════════════
#  Filename Heuristic
# ═══════════════════════════════════════════════════════════════

_LOADER_TOKENS = {"fabric", "forge", "neoforge", "quilt", "client", "server"}
_MC_VERSION_RE = re.compile(r"^1\.\d{1,2}(?:\.\d{1,2})?(?:-pre\d+|-rc\d+)?$")


def looks_like_mc_version(token: str) -> bool:
    if token.lower().startswith("mc"):
        token = token[2:]
    return bool(_MC_VERSION_RE.match(token))


def looks_like_version(token: str) -> bool:
    if token.startswith("v"):
        token = token[1:]
    return any(ch.isdigit() for ch in token)


def guess_from_filename(filename: str) -> tuple[Optional[str], Optional[str]]:
    """Guess (id, version) from a mod file name like ``create-1.20.1-0.5.1f.jar``.

    The version is the last token that looks like a version but not like a
    Minecraft version; the id is every token before it.
    """
    stem = filename[:-4] if filename.lower().endswith(".jar") else filename
    tokens = [t for t in re.split(r"[-+_]", stem) if t.strip()]
    if not tokens:
        return (stem or None), None

    chosen = None
    for token in reversed(tokens):
        if token.lower() in _LOADER_TOKENS:
            continue
        if looks_like_mc_version(token):
            continue
        if looks_like_version(token):
            chosen = token
            break

    if chosen is None:
        return stem, None
    prefix = []
    for token in tokens:
        if token == chosen:
            break
        prefix.append(token)
    mod_id = "-".join(prefix) or stem
    return mod_id, chosen


def _manifest_implementation_version(zf: zipfile.ZipFile, names: set[str]) -> Optional[str]:
    if "META-INF/MANIFEST.MF" not in names:
        return None
    for line in _read_text(zf, "META-INF/MANIFEST.MF").splitlines():
        if line.lower().startswith("implementation-version:"):
            return _blank_to_none(line.split(":", 1)[1].strip())
    return None


def _parse_fallback(zf: zipfile.ZipFile, names: set[str], filename: str) -> Optional[ModMatch]:
    mf_version = None
    try:
        mf_version = _manifest_implementation_version(zf, names)
    except Exception as e:
        logger.debug(f"Error reading MANIFEST.MF from {filename}: {e}")
    file_id, file_version = guess_from_filename(filename)
    return FilenameGuess(mod_id=file_id, version=mf_version or file_version, name=file_id)


# Ordered: the first parser returning a match with any identity wins.
PARSERS: tuple[Callable[[zipfile.ZipFile, set[str], str], Optional[ModMatch]], ...] = (
    _parse_fabric,
    _parse_quilt,
    _parse_mods_toml,
    _parse_mcmod_info,
    _parse_pom_properties,
    _parse_fallback,
)


# ═══════════════════════════════════════════════════════════════
#  Entry Point
# ═══════════════════════════════════════════════════════════════

def match_archive(jar_path: Path) -> Optional[ModMatch]:
    """Run the parsers over one archive and return the winning match, if any."""
    try:
        with zipfile.ZipFile(jar_path, "r") as zf:
            names = set(zf.namelist())
            for parser in PARSERS:
                try:
                    match = parser(zf, names, jar_path.name)
                except Exception as e:
                    logger.debug(f"{parser.__name__} failed for {jar_path.name}: {e}")
                    continue
                if match is not None and match.has_identity():
                    return match
    except Exception as e:
        logger.debug(f"Could not open mod archive {jar_path}: {e}")
    return None


def extract_package_descriptor(jar_path: Path, rel_path: str) -> Optional[PackageDescriptor]:
    match = match_archive(jar_path)
    if match is None:
        return None
    return match.to_descriptor(rel_path)
