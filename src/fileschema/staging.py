from __future__ import annotations

from dataclasses import dataclass
import os
import shutil
import time
import uuid
import logging
from pathlib import Path

from core.settings import TEMP_DIRECTORY_PREFIX

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StagingLayout:
    """Filesystem layout for in-progress writes.

    Layout:
      temp_root/
        .temp-fileschema-<run_id>/   -> Working area for one write run
          <uuid>                     -> One shard file, not yet committed

    The run directory is hidden, so file patterns such as "test_*" never match
    a shard before it is promoted to its final name.
    """

    temp_root: Path

    # ----------------------------
    # Paths
    # ----------------------------
    def get_run_directory(self, run_id: str) -> Path:
        return self.temp_root / f"{TEMP_DIRECTORY_PREFIX}{run_id}"

    def new_temp_file(self, run_id: str) -> Path:
        run_dir = self.get_run_directory(run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        return run_dir / uuid.uuid4().hex

    # ----------------------------
    # Commit
    # ----------------------------
    def promote(self, *, temp_path: Path, final_path: Path) -> None:
        """
        Atomically move a finished temp file to its final name.
        Retries briefly on PermissionError (transient locks on Windows).
        """
        final_path.parent.mkdir(parents=True, exist_ok=True)

        max_retries = 10
        for i in range(max_retries):
            try:
                os.replace(temp_path, final_path)
                return
            except PermissionError:
                if i == max_retries - 1:
                    raise
                time.sleep(0.05 * (i + 1))

    def retract(self, final_paths: list[Path]) -> None:
        """Remove files already promoted by a bundle that failed to commit as a whole."""
        for final_path in final_paths:
            try:
                final_path.unlink(missing_ok=True)
            except OSError as e:
                logger.error("Could not retract partially committed file %s: %s", final_path, e)

    # ----------------------------
    # Cleanup
    # ----------------------------
    def cleanup_run(self, run_id: str) -> None:
        """Remove the run's temp directory and anything left in it."""
        run_dir = self.get_run_directory(run_id)
        if not run_dir.exists():
            return
        leftovers = [p for p in run_dir.iterdir()]
        if leftovers:
            logger.debug("Discarding %s uncommitted temp files in %s", len(leftovers), run_dir)
        shutil.rmtree(run_dir, ignore_errors=True)
