"""
Batch driver — lifts every source file under a directory.

  • lift_file(path)                        — lift one file, return LiftResult
  • lift_directory(input_dir, output_dir)  — mirror a tree into output_dir

Files are independent: a parse failure or an engine defect on one file is
logged and recorded in the summary, and the batch moves on.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from lifter.diagnostics import Diagnostic
from lifter.errors import LifterError
from lifter.pipeline import LiftResult, lift_source

logger = logging.getLogger(__name__)

_SKIP_DIRS = {".git", "target", "__pycache__", "node_modules", ".vscode", ".idea", "venv"}


@dataclass
class LiftConfig:
    extensions: Tuple[str, ...] = (".rs",)
    output_dir: str = "output"
    skip_dirs: Tuple[str, ...] = tuple(sorted(_SKIP_DIRS))


@dataclass
class FileOutcome:
    status: str                 # "lifted" | "skipped" | "failed"
    output_path: Optional[str] = None
    message: str = ""
    diagnostics: List[Diagnostic] = field(default_factory=list)


def is_binary(path: str) -> bool:
    """NUL byte in the first 8 KiB."""
    with open(path, "rb") as fb:
        return b"\x00" in fb.read(8192)


def lift_file(path: str) -> LiftResult:
    """Lift one file.  Raises ParseError / PhaseTransitionError / OSError."""
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        text = f.read()
    return lift_source(text)


def discover_files(input_dir: str, config: LiftConfig) -> List[str]:
    """Relative paths (forward slashes) of every file to lift, sorted."""
    files = []
    extensions = {e.lower() for e in config.extensions}
    for root, dirs, filenames in os.walk(input_dir):
        dirs[:] = [d for d in dirs if d not in config.skip_dirs]
        for fname in filenames:
            if os.path.splitext(fname)[1].lower() in extensions:
                rel = os.path.relpath(os.path.join(root, fname), input_dir)
                files.append(rel.replace("\\", "/"))
    return sorted(files)


def lift_directory(input_dir: str, output_dir: Optional[str] = None,
                   config: Optional[LiftConfig] = None) -> Dict[str, FileOutcome]:
    """Lift every matching file under ``input_dir`` into ``output_dir``.

    Output files land at the same relative path; parent directories are
    created as needed.  Returns one FileOutcome per discovered file.
    """
    config = config or LiftConfig()
    output_dir = output_dir or config.output_dir
    if not os.path.isdir(input_dir):
        raise NotADirectoryError(input_dir)

    summary: Dict[str, FileOutcome] = {}
    for rel in discover_files(input_dir, config):
        src = os.path.join(input_dir, rel)
        dst = os.path.join(output_dir, rel)
        summary[rel] = _lift_one(src, dst)
    lifted = sum(1 for o in summary.values() if o.status == "lifted")
    logger.info("Lifted %d of %d file(s) from %s", lifted, len(summary), input_dir)
    return summary


def _lift_one(src: str, dst: str) -> FileOutcome:
    try:
        if is_binary(src):
            logger.warning("Skipping binary file: %s", src)
            return FileOutcome("skipped", message="binary file")
        result = lift_file(src)
        os.makedirs(os.path.dirname(dst) or ".", exist_ok=True)
        with open(dst, "w", encoding="utf-8") as f:
            f.write(result.text)
    except (LifterError, OSError) as e:
        logger.error("Failed to lift %s: %s", src, e)
        return FileOutcome("failed", message=str(e))
    except Exception as e:
        logger.exception("Unexpected error lifting %s", src)
        return FileOutcome("failed", message=f"{type(e).__name__}: {e}")

    logger.info("Processed: %s", src)
    return FileOutcome("lifted", output_path=dst, diagnostics=result.diagnostics)
