# cache.py
from __future__ import annotations

import hashlib
import io
import json
import os
import subprocess
import tarfile
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .trigger import match_glob

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Dependency build cache, keyed by manifest contents:
#   cache_key = hash(
#       cache name (usually the job name),
#       contents of declared input files (globs, e.g. "**/Cargo.toml"),
#       tool versions (rustc, cargo),
#       optional salt (e.g. toolchain channel)
#   )
#
# Cache artifact:
#   a tar.gz containing the declared cache paths plus a manifest.json for
#   explainability. Paths inside the workspace are stored under "workspace/",
#   paths under the user's home ("~/.cargo/registry") under "home/".
#
# The cache is an optimization only. Restore never raises: any problem is
# reported as a miss. Writers build into a unique temp file and rename it
# into place, so concurrent savers resolve last-writer-wins and readers
# never see a partial artifact.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".lintci/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".lintci/**",
    "target/**",
    "**/.DS_Store",
]
SAVE_EXCLUDES = ["**/.DS_Store"]

WORKSPACE_PREFIX = "workspace"
HOME_PREFIX = "home"
MANIFEST_MEMBER = ".lintci_cache_manifest.json"


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    manifest: Dict = field(default_factory=dict)


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return p.resolve().relative_to(root.resolve()).as_posix()


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    return any(match_glob(rel, g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(repo_root: Path, patterns: List[str], excludes: List[str]) -> List[Path]:
    """
    Expand input patterns into concrete files.
    Supports:
      - file path: "Cargo.lock"
      - dir path:  "plugins/src/"
      - glob:      "**/Cargo.toml"
    """
    out: Dict[str, Path] = {}
    real_root = repo_root.resolve()
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = repo_root / pat
        candidates = [p] if p.exists() else sorted(repo_root.glob(pat))
        for c in candidates:
            files = _iter_files_under(c) if c.is_dir() else [c]
            for f in files:
                # symlinks pointing outside the workspace are not inputs
                if not f.resolve().is_relative_to(real_root):
                    continue
                rel = _relpath(f, repo_root)
                if _matches_any_glob(rel, excludes):
                    continue
                out.setdefault(rel, f)
    return [out[k] for k in sorted(out)]


def tool_version(tool: str) -> Optional[str]:
    """
    Best-effort version discovery. Keep it simple and stable.
    """
    for cmd in ([tool, "--version"], [tool, "-V"]):
        try:
            completed = subprocess.run(cmd, text=True, capture_output=True, check=False)
        except OSError:
            return None
        text = (completed.stdout or "").strip() or (completed.stderr or "").strip()
        if completed.returncode == 0 and text:
            # Normalize whitespace to make hashing stable
            return " ".join(text.split())
    return None


def compute_cache_key(
    name: str,
    inputs: List[str],
    *,
    repo_root: str | Path = ".",
    requires: Optional[List[str]] = None,
    tool_versions: Optional[Dict[str, Optional[str]]] = None,
    salt: Optional[Dict[str, str]] = None,
    excludes: Optional[List[str]] = None,
) -> Tuple[str, Dict]:
    """
    Returns (cache_key, manifest) where manifest can be stored for explainability.
    """
    root = Path(repo_root).resolve()
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])

    requires = list(requires or [])
    if tool_versions is None:
        tool_versions = {t: tool_version(t) for t in requires}

    files = []
    for f in _resolve_globs(root, inputs, exclude_globs):
        files.append((_relpath(f, root), _hash_file_contents(f)))
    inputs_hash = _sha256_str(_json_dumps_stable(files))

    payload = {
        "v": 1,  # bump this if you change hashing format
        "name": name,
        "tool_versions": dict(tool_versions),
        "inputs_hash": inputs_hash,
        "salt": dict(salt or {}),
    }
    key = _sha256_str(_json_dumps_stable(payload))
    manifest = {
        "key": key,
        "payload": payload,
        "inputs": [rel for rel, _ in files],
        "generated_at_unix": int(time.time()),
    }
    return key, manifest


def _arc_root(entry: str, repo_root: Path, home: Path) -> Tuple[str, Path]:
    """Map a declared cache path to (archive prefix, absolute source)."""
    if entry.startswith("~"):
        rel = entry[1:].lstrip("/")
        return f"{HOME_PREFIX}/{rel}", home / rel
    return f"{WORKSPACE_PREFIX}/{entry.strip('/')}", repo_root / entry


class CacheStore:
    """
    File-based cache store:
      root/
        <name>/
          <key>.tar.gz
          <key>.manifest.json
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR, *, home: str | Path | None = None):
        self.root = Path(root).expanduser().resolve()
        self.home = Path(home).resolve() if home is not None else Path.home()

    def _dir(self, name: str) -> Path:
        d = self.root / name
        d.mkdir(parents=True, exist_ok=True)
        return d

    def artifact_path(self, name: str, key: str) -> Path:
        return self._dir(name) / f"{key}.tar.gz"

    def manifest_path(self, name: str, key: str) -> Path:
        return self._dir(name) / f"{key}.manifest.json"

    def restore(self, name: str, key: str, *, repo_root: str | Path = ".") -> CacheHit:
        """
        Restore cached paths into the workspace / home directory.

        NOTE: restore is "overwrite by extraction". Stale files are harmless.
        """
        root = Path(repo_root).resolve()
        try:
            art = self.artifact_path(name, key)
            man = self.manifest_path(name, key)
            if not art.exists() or not man.exists():
                return CacheHit(hit=False, key=key, reason="cache miss")

            with tarfile.open(str(art), mode="r:gz") as tar:
                for member in tar.getmembers():
                    head, _, rest = member.name.partition("/")
                    if not rest:
                        continue
                    dest = root if head == WORKSPACE_PREFIX else self.home if head == HOME_PREFIX else None
                    if dest is None:
                        continue
                    member.name = rest
                    tar.extract(member, path=str(dest), filter="data")

            stored = json.loads(man.read_text(encoding="utf-8"))
        except (OSError, tarfile.TarError, json.JSONDecodeError) as e:
            return CacheHit(hit=False, key=key, reason=f"cache exists but restore failed: {e}")

        return CacheHit(hit=True, key=key, reason="cache hit: restored artifact", manifest=stored)

    def save(
        self,
        name: str,
        key: str,
        paths: List[str],
        manifest: Dict,
        *,
        repo_root: str | Path = ".",
        excludes: Optional[List[str]] = None,
    ) -> Path:
        """
        Save the declared paths into the artifact for this key. Returns the artifact path.

        Missing paths are skipped; callers treat any exception as a non-fatal cache error.
        """
        root = Path(repo_root).resolve()
        exclude_globs = list(SAVE_EXCLUDES) + list(excludes or [])

        art = self.artifact_path(name, key)
        man = self.manifest_path(name, key)
        tmp = art.with_name(f"{art.name}.{uuid.uuid4().hex}.tmp")
        try:
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for entry in paths:
                    prefix, src = _arc_root(entry, root, self.home)
                    if not src.exists():
                        continue
                    files = _iter_files_under(src) if src.is_dir() else [src]
                    for f in files:
                        rel = f.relative_to(src).as_posix() if src.is_dir() else ""
                        if rel and _matches_any_glob(rel, exclude_globs):
                            continue
                        arcname = f"{prefix}/{rel}" if rel else prefix
                        tar.add(str(f), arcname=arcname, recursive=False)

                payload = json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False).encode("utf-8")
                info = tarfile.TarInfo(name=MANIFEST_MEMBER)
                info.size = len(payload)
                info.mtime = int(time.time())
                tar.addfile(info, fileobj=io.BytesIO(payload))

            man_tmp = man.with_name(f"{man.name}.{uuid.uuid4().hex}.tmp")
            man_tmp.write_text(json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8")
            tmp.replace(art)
            man_tmp.replace(man)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        return art

    def prune(self, name: str, keep: int = 3) -> None:
        """
        Keep only the newest N artifacts for a cache name.
        Uses file mtime as "newest".
        """
        d = self._dir(name)
        tars = sorted(d.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
        for p in tars[keep:]:
            key = p.name[: -len(".tar.gz")]
            p.unlink(missing_ok=True)
            (d / f"{key}.manifest.json").unlink(missing_ok=True)


def cache_enabled() -> bool:
    return os.environ.get("LINTCI_NO_CACHE", "") not in ("1", "true", "yes")
