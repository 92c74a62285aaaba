"""
Input resolution for one task: the BOLD series and its AP/PA blip pair.

Each blip side is resolved by an ordered list of strategies (canonical BIDS
name first, keyword scan of ``fmap/`` second); the first hit wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from topupbatch.scan import Task, subject_session_dir

logger = logging.getLogger(__name__)

NIFTI_EXTENSIONS = (".nii", ".nii.gz")

# Blip side -> BIDS ``dir-`` label of the canonical fmap name.
SIDE_DIRECTIONS = {"AP": "ap", "PA": "pa"}

Strategy = Callable[[Task, Path, Sequence[str]], Optional[Path]]


@dataclass(frozen=True)
class ResolvedInputs:
    bold: Optional[Path]
    ap: Optional[Path]
    pa: Optional[Path]
    fmap_dir: Path

    @property
    def missing_sides(self) -> List[str]:
        return [side for side, path in (("AP", self.ap), ("PA", self.pa)) if path is None]


def nifti_stem(path: Path) -> str:
    name = Path(path).name
    for ext in (".nii.gz", ".nii"):
        if name.endswith(ext):
            return name[: -len(ext)]
    return Path(name).stem


def sidecar_for(path: Path) -> Path:
    path = Path(path)
    return path.with_name(f"{nifti_stem(path)}.json")


def entity_prefix(task: Task) -> str:
    if task.session:
        return f"{task.subject}_{task.session}"
    return task.subject


def modality_dir(root: Path, task: Task, kind: str) -> Path:
    return subject_session_dir(root, task.subject, task.session) / kind


def first_existing(candidates: Sequence[Path]) -> Optional[Path]:
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def bold_for_task(root: Path, task: Task) -> Optional[Path]:
    func_dir = modality_dir(root, task, "func")
    base = f"{entity_prefix(task)}_task-{task.run}_bold"
    return first_existing([func_dir / f"{base}{ext}" for ext in NIFTI_EXTENSIONS])


def canonical_fmap(direction: str) -> Strategy:
    """Strategy matching ``<sub>[_<ses>]_dir-<direction>_task-<run>_epi.nii[.gz]``."""

    def _strategy(task: Task, fmap_dir: Path, keywords: Sequence[str]) -> Optional[Path]:
        base = f"{entity_prefix(task)}_dir-{direction}_task-{task.run}_epi"
        return first_existing([fmap_dir / f"{base}{ext}" for ext in NIFTI_EXTENSIONS])

    return _strategy


def keyword_scan(task: Task, fmap_dir: Path, keywords: Sequence[str]) -> Optional[Path]:
    """
    Pick the NIfTI in ``fmap_dir`` whose name contains any keyword (case-insensitive).

    Among several hits the shortest file name wins; equal lengths fall back to
    name order so the choice is stable across runs.
    """
    if not fmap_dir.is_dir():
        return None
    lowered = [k.lower() for k in keywords if k]
    hits = []
    for path in fmap_dir.iterdir():
        if not path.is_file() or not path.name.endswith(NIFTI_EXTENSIONS):
            continue
        name = path.name.lower()
        if any(key in name for key in lowered):
            hits.append(path)
    if not hits:
        return None
    return min(hits, key=lambda p: (len(p.name), p.name))


def strategies_for(side: str) -> List[Strategy]:
    return [canonical_fmap(SIDE_DIRECTIONS[side]), keyword_scan]


def resolve_blip(task: Task, fmap_dir: Path, side: str, keywords: Sequence[str]) -> Optional[Path]:
    for strategy in strategies_for(side):
        found = strategy(task, fmap_dir, keywords)
        if found is not None:
            return found
    return None


def resolve_inputs(
    root: Path,
    task: Task,
    ap_keys: Sequence[str],
    pa_keys: Sequence[str],
) -> ResolvedInputs:
    fmap_dir = modality_dir(root, task, "fmap")
    ap = resolve_blip(task, fmap_dir, "AP", ap_keys)
    pa = resolve_blip(task, fmap_dir, "PA", pa_keys)
    if ap is not None and ap == pa:
        logger.warning("[%s] AP and PA both resolved to %s", task.label, ap)
    return ResolvedInputs(bold=bold_for_task(root, task), ap=ap, pa=pa, fmap_dir=fmap_dir)
