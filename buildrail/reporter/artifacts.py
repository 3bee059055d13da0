"""
Artifact Stager
===============
Copies files matched by artifact rules from a run's working tree into the
artifact store.

Store layout for one run:

    <store_dir>/                 published artifacts (rule "=> /", "=> dir")
    <store_dir>/<name>.zip       archives (rule "=> name.zip")
    <store_dir>/.staged/         stage-only files (rule "=>"), never published

Path mapping: the part of the source glob before its first wildcard
segment is stripped, the rest of the matched path is kept. So
``build/libs/*.jar => /`` puts ``build/libs/a.jar`` at ``<store>/a.jar``.
Exclusion rules (``-:glob``) drop files matched by earlier rules.
"""
import logging
import shutil
import zipfile
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Tuple

from buildrail.models.pipeline import ArtifactRule
from buildrail.models.run import ArtifactManifest

logger = logging.getLogger(__name__)

STAGED_DIR = ".staged"
_WILDCARDS = set("*?[")


def _static_prefix(pattern: str) -> str:
    """Leading path segments of ``pattern`` that contain no wildcard."""
    parts = []
    for segment in PurePosixPath(pattern).parts:
        if _WILDCARDS & set(segment):
            break
        parts.append(segment)
    return "/".join(parts)


def _expand(workspace: Path, rule: ArtifactRule) -> List[Tuple[Path, str]]:
    """Return (absolute file, mapped relative path) pairs for an include rule."""
    pattern = rule.source.lstrip("/")
    prefix = _static_prefix(pattern)
    has_wildcard = prefix != pattern

    if not has_wildcard:
        target = workspace / pattern
        if target.is_file():
            return [(target, target.name)]
        if target.is_dir():
            return [(p, p.relative_to(target).as_posix()) for p in sorted(target.rglob("*")) if p.is_file()]
        return []

    base = workspace / prefix if prefix else workspace
    matches = sorted(p for p in workspace.glob(pattern) if p.is_file())
    return [(p, p.relative_to(base).as_posix()) for p in matches]


def _inside(root: Path, candidate: Path) -> bool:
    try:
        candidate.resolve().relative_to(root.resolve())
        return True
    except ValueError:
        return False


class ArtifactStager:

    def stage(self, rules: Iterable[ArtifactRule], workspace_path: str, store_dir: str) -> ArtifactManifest:
        """
        Apply ``rules`` against ``workspace_path`` and fill ``store_dir``.

        Rules whose destination escapes the store are skipped with an error
        log; a missing match is not an error.
        """
        workspace = Path(workspace_path)
        store = Path(store_dir)
        manifest = ArtifactManifest(store_path=str(store))

        # (source file, destination path relative to the store or archive, rule)
        selected: Dict[Path, Tuple[str, ArtifactRule]] = {}
        for rule in rules:
            if rule.exclude:
                for excluded in workspace.glob(rule.source.lstrip("/")):
                    selected.pop(excluded, None)
                continue
            for source, rel in _expand(workspace, rule):
                selected[source] = (rel, rule)

        archives: Dict[str, List[Tuple[Path, str]]] = {}
        for source, (rel, rule) in selected.items():
            if not rule.publishes:
                target = store / STAGED_DIR / rel
                if self._copy(source, target, store):
                    manifest.staged.append(rel)
                continue

            dest = rule.destination.strip("/")
            if dest.endswith(".zip"):
                archives.setdefault(dest, []).append((source, rel))
                continue

            target = store / dest / rel if dest else store / rel
            if self._copy(source, target, store):
                published = target.relative_to(store).as_posix()
                manifest.published.append(published)
                manifest.total_size += target.stat().st_size

        for dest, members in archives.items():
            archive = store / dest
            if not _inside(store, archive):
                logger.error("Artifact archive %s escapes the store, skipped", dest)
                continue
            archive.parent.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for source, rel in members:
                    zf.write(source, arcname=rel)
            manifest.published.append(dest)
            manifest.total_size += archive.stat().st_size

        manifest.published.sort()
        manifest.staged.sort()
        logger.info(
            "Artifacts staged | store=%s | published=%d | staged_only=%d | size=%d bytes",
            store, len(manifest.published), len(manifest.staged), manifest.total_size,
        )
        return manifest

    @staticmethod
    def _copy(source: Path, target: Path, store: Path) -> bool:
        if not _inside(store, target):
            logger.error("Artifact destination %s escapes the store, skipped", target)
            return False
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)
        return True
