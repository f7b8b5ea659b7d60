"""Configuration for locating the ledger and manifest files.

Values come from explicit arguments first, then environment variables, then
defaults. The project root is discovered by walking up from the working
directory to the first directory that holds a ledger or manifest file.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

ROOT_ENV = "LEDGER_PROJECT_ROOT"
LEDGER_FILE_ENV = "LEDGER_FILE"
MANIFEST_FILE_ENV = "LEDGER_MANIFEST"
LOG_LEVEL_ENV = "LEDGER_LOG_LEVEL"
LOG_FILE_ENV = "LEDGER_LOG_FILE"

DEFAULT_LEDGER_FILE = "progress.yaml"
DEFAULT_MANIFEST_FILE = "manifest.yaml"
DEFAULT_LOG_LEVEL = "INFO"


def _candidate_bases(start: Path) -> List[Path]:
    bases: List[Path] = [start]
    bases.extend(start.parents)
    return bases


def locate_project_root(start: Optional[Path] = None,
                        markers: tuple = (DEFAULT_LEDGER_FILE, DEFAULT_MANIFEST_FILE)) -> Optional[Path]:
    """Walk upwards from ``start`` to the first directory containing a marker file."""
    origin = (start or Path.cwd()).resolve()
    for base in _candidate_bases(origin):
        for marker in markers:
            if (base / marker).exists():
                return base
    return None


@dataclass(slots=True)
class LedgerConfig:
    """Resolved locations and logging settings."""

    root: Path
    ledger_file: str = DEFAULT_LEDGER_FILE
    manifest_file: str = DEFAULT_MANIFEST_FILE
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: Optional[Path] = None

    @property
    def ledger_path(self) -> Path:
        return (self.root / self.ledger_file).resolve()

    @property
    def manifest_path(self) -> Path:
        return (self.root / self.manifest_file).resolve()

    @property
    def log_level_value(self) -> int:
        level = logging.getLevelName(self.log_level.upper())
        return level if isinstance(level, int) else logging.INFO

    def to_dict(self) -> Dict[str, Optional[str]]:
        """Convert to dictionary representation."""
        return {
            "root": str(self.root),
            "ledger_path": str(self.ledger_path),
            "manifest_path": str(self.manifest_path),
            "log_level": self.log_level,
            "log_file": str(self.log_file) if self.log_file else None,
        }

    @classmethod
    def resolve(
        cls,
        root: Optional[str] = None,
        *,
        ledger_file: Optional[str] = None,
        manifest_file: Optional[str] = None,
        environ: Optional[Dict[str, str]] = None,
    ) -> "LedgerConfig":
        """Build a config from arguments, the environment and discovery."""
        env = os.environ if environ is None else environ
        ledger_name = ledger_file or env.get(LEDGER_FILE_ENV) or DEFAULT_LEDGER_FILE
        manifest_name = manifest_file or env.get(MANIFEST_FILE_ENV) or DEFAULT_MANIFEST_FILE

        if root:
            resolved = Path(root).expanduser().resolve()
            if not resolved.exists():
                raise ValueError(f"Provided root '{root}' does not exist.")
        elif env.get(ROOT_ENV):
            resolved = Path(env[ROOT_ENV]).expanduser().resolve()
            if not resolved.exists():
                raise ValueError(
                    f"Environment variable {ROOT_ENV} points to '{env[ROOT_ENV]}', which does not exist."
                )
        else:
            detected = locate_project_root(markers=(ledger_name, manifest_name))
            if detected is None:
                raise ValueError(
                    "Unable to determine project root automatically. Provide the 'root' argument "
                    f"or set the {ROOT_ENV} environment variable."
                )
            resolved = detected

        log_file = env.get(LOG_FILE_ENV)
        return cls(
            root=resolved,
            ledger_file=ledger_name,
            manifest_file=manifest_name,
            log_level=env.get(LOG_LEVEL_ENV) or DEFAULT_LOG_LEVEL,
            log_file=Path(log_file).expanduser() if log_file else None,
        )
