from __future__ import annotations

import sys
from pathlib import Path


def _ensure_repo_root_on_path() -> None:
    """Ensure the repository root (parent of this package) is on ``sys.path``.

    Running ``python portals_tasks/__main__.py`` directly leaves the package
    undiscoverable; inserting the parent directory makes the absolute import
    below resolve.
    """
    pkg_dir = Path(__file__).resolve().parent
    repo_root_str = str(pkg_dir.parent)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


try:
    # python -m portals_tasks
    from .app import run  # type: ignore[attr-defined]
except ImportError:
    # Executed as a plain script.
    _ensure_repo_root_on_path()
    from portals_tasks.app import run  # type: ignore[attr-defined]


def main() -> int:
    """Launch the task suite window."""
    return run()


if __name__ == "__main__":
    raise SystemExit(main())
