"""
Runtime Profile Resolver

Decides which framework conventions apply to a generated project by looking
at its package.json: the dev command to spawn and the port it listens on.

Detection order:
    no manifest            -> Next.js (default)
    "next" dependency      -> Next.js
    "vite" dependency only -> Vite
    anything else          -> Next.js
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from healloop.schemas.sandbox import ProjectFile


MANIFEST_PATH = "package.json"


class Framework(str, Enum):
    NEXTJS = "nextjs"
    VITE = "vite"


@dataclass(frozen=True)
class RuntimeProfile:
    framework: Framework
    start_command: str
    port: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "framework": self.framework.value,
            "start_command": self.start_command,
            "port": self.port,
        }


NEXTJS_PROFILE = RuntimeProfile(
    framework=Framework.NEXTJS,
    start_command="npm run dev -- --hostname 0.0.0.0 --port 3000",
    port=3000,
)

VITE_PROFILE = RuntimeProfile(
    framework=Framework.VITE,
    start_command="npm run dev -- --host 0.0.0.0 --port 5173",
    port=5173,
)

DEFAULT_PROFILE = NEXTJS_PROFILE


def normalize_runtime_path(path: str) -> str:
    """Normalize a generated file path to sandbox-relative POSIX form"""
    normalized = path.replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.lstrip("/")


def find_manifest(files: Iterable[ProjectFile]) -> Optional[ProjectFile]:
    for file in files:
        if normalize_runtime_path(file.path) == MANIFEST_PATH:
            return file
    return None


def parse_manifest(content: str) -> Optional[Dict[str, Any]]:
    """Parse package.json content, returning None for anything that is not a JSON object"""
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def declared_dependencies(manifest: Dict[str, Any]) -> Dict[str, Any]:
    deps: Dict[str, Any] = {}
    for section in ("dependencies", "devDependencies"):
        value = manifest.get(section)
        if isinstance(value, dict):
            deps.update(value)
    return deps


def resolve_runtime_profile(files: Iterable[ProjectFile]) -> RuntimeProfile:
    """
    Resolve the runtime profile for a file set.

    Never raises: a missing or malformed manifest resolves to the default profile.
    """
    manifest_file = find_manifest(files)
    if manifest_file is None:
        return DEFAULT_PROFILE

    manifest = parse_manifest(manifest_file.content)
    if manifest is None:
        return DEFAULT_PROFILE

    deps = declared_dependencies(manifest)
    scripts = manifest.get("scripts")
    dev_script = ""
    if isinstance(scripts, dict) and isinstance(scripts.get("dev"), str):
        dev_script = scripts["dev"].lower()

    if "next" in deps or "next" in dev_script:
        return NEXTJS_PROFILE
    if "vite" in deps or "vite" in dev_script:
        return VITE_PROFILE
    return DEFAULT_PROFILE
