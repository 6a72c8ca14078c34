from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable


def set_umask_from_env() -> None:
    umask_value = os.environ.get("NR_UMASK", "002")
    try:
        os.umask(int(umask_value, 8))
    except (ValueError, TypeError):
        os.umask(0o002)


def ensure_runtime_dirs(paths: Iterable[str]) -> None:
    for path in paths:
        if not path:
            continue
        _ensure_dir(Path(path))


def build_default_paths(data_dir: str, state_db: str) -> list[str]:
    return [
        data_dir,
        os.path.join(data_dir, "logs"),
        os.path.dirname(state_db),
    ]


def _ensure_dir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        return
    try:
        path.chmod(0o775)
    except PermissionError:
        return
