"""
Language profile table.

Profiles are loaded from YAML (Config_Files/languages.yaml unless
SANDBOX_LANGUAGES_FILE points elsewhere) and validated with pydantic. A
profile is immutable once loaded; requests look it up by id.
"""

from __future__ import annotations

import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator

from codejoin_Exec_API.app.core.config import settings as app_settings
from .exceptions import ValidationError


WORKSPACE_DIR = "/workspace"
FILE_PLACEHOLDER = "{file}"

_MEM_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([bkmg]?)b?\s*$", re.IGNORECASE)
_MEM_UNITS = {"": 1, "b": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3}


def parse_memory_limit(value: str) -> int:
    """Convert a docker size string ("128m", "1g", "512k") to bytes."""
    m = _MEM_RE.match(str(value))
    if not m:
        raise ValueError(f"Invalid memory limit: {value!r}")
    return int(float(m.group(1)) * _MEM_UNITS[m.group(2).lower()])


class LanguageProfile(BaseModel):
    """Static description of how to run one language inside a sandbox."""

    id: str
    name: str
    image: str
    file_extension: str = Field(alias="fileExtension")
    run_command: str = Field(alias="runCommand")
    compile_command: Optional[str] = Field(default=None, alias="compileCommand")
    timeout_ms: int = Field(default=10000, gt=0, alias="timeoutMs")
    memory_limit: str = Field(default="128m", alias="memoryLimit")
    cpu_limit: float = Field(default=0.5, gt=0, alias="cpuLimit")
    process_limit: int = Field(default=64, gt=0, alias="processLimit")
    file_name: Optional[str] = Field(default=None, alias="fileName")
    repl_command: Optional[str] = Field(default=None, alias="replCommand")
    ulimit_nofile: int = Field(default=64, gt=0, alias="ulimitNofile")
    ulimit_nproc: int = Field(default=32, gt=0, alias="ulimitNproc")

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    @field_validator("file_extension")
    @classmethod
    def _dotted_extension(cls, v: str) -> str:
        v = v.strip()
        return v if v.startswith(".") else f".{v}"

    @field_validator("memory_limit")
    @classmethod
    def _valid_memory(cls, v: str) -> str:
        parse_memory_limit(v)
        return v.strip().lower()

    @field_validator("file_name")
    @classmethod
    def _plain_file_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and ("/" in v or v in {"", ".", ".."}):
            raise ValueError("fileName must be a plain file name")
        return v

    @property
    def source_file_name(self) -> str:
        return self.file_name or f"code{self.file_extension}"

    @property
    def source_path(self) -> str:
        return f"{WORKSPACE_DIR}/{self.source_file_name}"

    @property
    def memory_bytes(self) -> int:
        return parse_memory_limit(self.memory_limit)

    @property
    def compiled(self) -> bool:
        return bool(self.compile_command)

    def build_command(self) -> str:
        """Shell command line for a batch run of this profile's source file.

        `{file}` is replaced with the source path; a run command without the
        placeholder is treated as an interpreter and gets the path appended.
        """
        path = self.source_path
        run = self.run_command
        if FILE_PLACEHOLDER in run:
            run = run.replace(FILE_PLACEHOLDER, path)
        elif not self.compile_command:
            run = f"{run} {path}"
        if self.compile_command:
            return f"{self.compile_command.replace(FILE_PLACEHOLDER, path)} && {run}"
        return run

    def interactive_command(self) -> str:
        return self.repl_command or "/bin/sh"

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "image": self.image,
            "compiled": self.compiled,
            "interactive": self.repl_command is not None,
            "timeoutMs": self.timeout_ms,
            "memoryLimit": self.memory_limit,
            "cpuLimit": self.cpu_limit,
            "processLimit": self.process_limit,
        }


def default_languages_path() -> Path:
    return Path(__file__).resolve().parents[3] / "Config_Files" / "languages.yaml"


def load_language_table(path: Optional[str | Path] = None) -> Dict[str, LanguageProfile]:
    """Read and validate a YAML profile table.

    The file holds a top-level `languages` mapping of id -> fields. Invalid
    entries are skipped with a warning so one bad profile does not disable
    the whole table.
    """
    p = Path(path) if path else default_languages_path()
    with open(p, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    entries = raw.get("languages", raw) if isinstance(raw, dict) else {}
    table: Dict[str, LanguageProfile] = {}
    for lang_id, fields in (entries or {}).items():
        if not isinstance(fields, dict):
            logger.warning(f"Language profile {lang_id!r} is not a mapping; skipped")
            continue
        try:
            data = dict(fields)
            data["id"] = str(lang_id).strip().lower()
            table[data["id"]] = LanguageProfile.model_validate(data)
        except Exception as e:
            logger.warning(f"Invalid language profile {lang_id!r} in {p}: {e}")
    logger.debug(f"Loaded {len(table)} language profiles from {p}")
    return table


class LanguageRegistry:
    """Thread-safe id -> LanguageProfile lookup."""

    def __init__(self, profiles: Optional[Dict[str, LanguageProfile]] = None) -> None:
        self._lock = threading.RLock()
        self._profiles: Dict[str, LanguageProfile] = dict(profiles or {})

    @classmethod
    def from_settings(cls) -> "LanguageRegistry":
        try:
            path = getattr(app_settings, "SANDBOX_LANGUAGES_FILE", None)
        except Exception:
            path = None
        return cls(load_language_table(path))

    def get(self, language_id: str) -> LanguageProfile:
        key = str(language_id or "").strip().lower()
        with self._lock:
            prof = self._profiles.get(key)
        if prof is None:
            raise ValidationError(f"Unsupported language: {language_id}", "unsupported_language")
        return prof

    def find(self, language_id: str) -> Optional[LanguageProfile]:
        with self._lock:
            return self._profiles.get(str(language_id or "").strip().lower())

    def register(self, profile: LanguageProfile) -> None:
        with self._lock:
            self._profiles[profile.id] = profile

    def unregister(self, language_id: str) -> bool:
        with self._lock:
            return self._profiles.pop(str(language_id).strip().lower(), None) is not None

    def ids(self) -> List[str]:
        with self._lock:
            return sorted(self._profiles)

    def profiles(self) -> List[LanguageProfile]:
        with self._lock:
            return [self._profiles[k] for k in sorted(self._profiles)]

    def __contains__(self, language_id: object) -> bool:
        return self.find(str(language_id)) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._profiles)


_registry: Optional[LanguageRegistry] = None
_registry_lock = threading.Lock()


def get_language_registry() -> LanguageRegistry:
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = LanguageRegistry.from_settings()
        return _registry


def reset_language_registry() -> None:
    global _registry
    with _registry_lock:
        _registry = None
