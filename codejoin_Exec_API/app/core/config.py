# config.py
# Description: Configuration settings for the codejoin execution core.
#
# Imports
import configparser
import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional, Dict, Any
from dotenv import load_dotenv


#
# 3rd-party Libraries
from loguru import logger
from collections.abc import MutableMapping

# Guard logging during module import so Loguru does not enqueue records before
# the import lock is released. Messages emitted before `_LOGGER_READY` flips to
# True are buffered and flushed once initialization completes.
_LOGGER_READY = False
_STARTUP_LOG_BUFFER: list[tuple[str, str, dict[str, Any]]] = []


def _buffered_log(level: str, message: str, **kwargs: Any) -> None:
    if _LOGGER_READY:
        logger.log(level, message, **kwargs)
    else:
        _STARTUP_LOG_BUFFER.append((level, message, kwargs))


def _log_info(message: str, **kwargs: Any) -> None:
    _buffered_log("INFO", message, **kwargs)


def _log_warning(message: str, **kwargs: Any) -> None:
    _buffered_log("WARNING", message, **kwargs)


def _log_debug(message: str, **kwargs: Any) -> None:
    _buffered_log("DEBUG", message, **kwargs)


def _flush_startup_logs() -> None:
    global _STARTUP_LOG_BUFFER
    for level, message, kwargs in _STARTUP_LOG_BUFFER:
        logger.log(level, message, **kwargs)
    _STARTUP_LOG_BUFFER = []


#
########################################################################################################################
#
# Functions:

def _project_root() -> Path:
    # __file__ is .../codejoin_Exec_API/app/core/config.py
    return Path(__file__).resolve().parent.parent.parent


@lru_cache(maxsize=1)
def load_comprehensive_config() -> configparser.ConfigParser:
    project_root = _project_root()

    # .env files never replace variables already present in the process env
    candidate_env_paths = [
        project_root / '.env',
        project_root / '.ENV',
        project_root / 'Config_Files' / '.env',
        project_root / 'Config_Files' / '.ENV',
    ]
    loaded_any_env = False
    for p in candidate_env_paths:
        try:
            if p.exists():
                _log_info(f"Loading environment variables from: {str(p)}")
                load_dotenv(dotenv_path=str(p), override=False)
                loaded_any_env = True
        except Exception:
            pass
    if not loaded_any_env:
        _log_debug(f"No .env/.ENV file found in {project_root}; using config.txt and system env")

    config_path_obj = Path(os.getenv("CODEJOIN_CONFIG_FILE") or (project_root / 'Config_Files' / 'config.txt'))
    _log_debug(f"Attempting to load config from: {str(config_path_obj)}")
    if not config_path_obj.exists():
        _log_warning(f"Config file not found at {str(config_path_obj)}")
        raise FileNotFoundError(f"Config file not found at {str(config_path_obj)}")

    config_parser = configparser.ConfigParser()
    config_parser.read(config_path_obj)
    _log_debug(f"load_comprehensive_config(): Sections found in config: {config_parser.sections()}")
    return config_parser


def _as_bool(val: object, default: bool) -> bool:
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on", "y"}


def load_settings() -> Dict[str, Any]:
    """
    Builds the runtime settings mapping for the execution core.

    Every SANDBOX_* key is resolved from the process environment first, then
    the `[Sandbox]` section of Config_Files/config.txt, then the built-in
    default. Unparseable values fall back to the default.
    """
    try:
        cp = load_comprehensive_config()
    except Exception:
        cp = None

    def _sbx_get(key: str, fallback: Optional[str] = None) -> Optional[str]:
        try:
            if cp and cp.has_section('Sandbox'):
                return cp.get('Sandbox', key, fallback=fallback)
        except Exception:
            pass
        return fallback

    def _sbx_env_or_cfg(env_key: str, cfg_key: str, default: str) -> str:
        return os.getenv(env_key) or _sbx_get(cfg_key, default) or default

    def _sbx_int(env_key: str, cfg_key: str, default: int) -> int:
        raw = os.getenv(env_key) or _sbx_get(cfg_key, str(default)) or str(default)
        try:
            return int(str(raw))
        except Exception:
            return default

    def _sbx_float(env_key: str, cfg_key: str, default: float) -> float:
        raw = os.getenv(env_key) or _sbx_get(cfg_key, str(default)) or str(default)
        try:
            return float(str(raw))
        except Exception:
            return default

    def _sbx_list(env_key: str, cfg_key: str, default: list[str]) -> list[str]:
        raw = os.getenv(env_key)
        if raw is None:
            raw = _sbx_get(cfg_key, None)
        if raw is None:
            return default
        try:
            if raw.strip().startswith("["):
                vals = json.loads(raw)
                return [str(v).strip() for v in vals if str(v).strip()]
        except Exception:
            pass
        return [s.strip() for s in str(raw).split(',') if s.strip()]

    # -------------------------
    # Sandbox (Code Execution) Settings
    # -------------------------
    SANDBOX_MAX_INPUT_BYTES = _sbx_int("SANDBOX_MAX_INPUT_BYTES", "max_input_bytes", 1024 * 1024)
    SANDBOX_MAX_OUTPUT_BYTES = _sbx_int("SANDBOX_MAX_OUTPUT_BYTES", "max_output_bytes", 64 * 1024)
    SANDBOX_MAX_CONCURRENT_SANDBOXES = _sbx_int("SANDBOX_MAX_CONCURRENT_SANDBOXES", "max_concurrent_sandboxes", 32)
    SANDBOX_ADMISSION_WAIT_SEC = _sbx_float("SANDBOX_ADMISSION_WAIT_SEC", "admission_wait_sec", 0.0)
    SANDBOX_REMOVE_GRACE_SEC = _sbx_int("SANDBOX_REMOVE_GRACE_SEC", "remove_grace_sec", 10)
    SANDBOX_DOCKER_TIMEOUT_SEC = _sbx_int("SANDBOX_DOCKER_TIMEOUT_SEC", "docker_timeout_sec", 30)
    SANDBOX_SESSION_IDLE_TIMEOUT_SEC = _sbx_int("SANDBOX_SESSION_IDLE_TIMEOUT_SEC", "session_idle_timeout_sec", 900)
    SANDBOX_SESSION_SWEEP_INTERVAL_SEC = _sbx_float("SANDBOX_SESSION_SWEEP_INTERVAL_SEC", "session_sweep_interval_sec", 30.0)
    SANDBOX_STREAM_QUEUE_MAX = _sbx_int("SANDBOX_STREAM_QUEUE_MAX", "stream_queue_max", 1000)
    SANDBOX_ENABLE_VALIDATION = _as_bool(
        os.getenv("SANDBOX_ENABLE_VALIDATION") or _sbx_get("enable_validation", "true"), True
    )
    SANDBOX_TMPFS_SIZE = _sbx_env_or_cfg("SANDBOX_TMPFS_SIZE", "tmpfs_size", "100m")
    SANDBOX_USER = _sbx_env_or_cfg("SANDBOX_USER", "user", "65534:65534")
    SANDBOX_LANGUAGES_FILE = os.getenv("SANDBOX_LANGUAGES_FILE") or _sbx_get("languages_file", None)
    SANDBOX_PIDS_LIMIT = _sbx_int("SANDBOX_PIDS_LIMIT", "pids_limit", 256)
    SANDBOX_MAX_CPU = _sbx_float("SANDBOX_MAX_CPU", "max_cpu", 4.0)
    SANDBOX_MAX_MEM_MB = _sbx_int("SANDBOX_MAX_MEM_MB", "max_mem_mb", 8192)
    SANDBOX_DOCKER_SECCOMP = os.getenv("SANDBOX_DOCKER_SECCOMP") or _sbx_get("docker_seccomp", None)
    SANDBOX_TRANSCODER_MAX_PENDING = _sbx_int("SANDBOX_TRANSCODER_MAX_PENDING", "transcoder_max_pending", 8192)
    SANDBOX_PREPULL_LANGUAGES = _sbx_list("SANDBOX_PREPULL_LANGUAGES", "prepull_languages", [])

    return {
        "PROJECT_ROOT": str(_project_root()),
        "SANDBOX_MAX_INPUT_BYTES": SANDBOX_MAX_INPUT_BYTES,
        "SANDBOX_MAX_OUTPUT_BYTES": SANDBOX_MAX_OUTPUT_BYTES,
        "SANDBOX_MAX_CONCURRENT_SANDBOXES": SANDBOX_MAX_CONCURRENT_SANDBOXES,
        "SANDBOX_ADMISSION_WAIT_SEC": SANDBOX_ADMISSION_WAIT_SEC,
        "SANDBOX_REMOVE_GRACE_SEC": SANDBOX_REMOVE_GRACE_SEC,
        "SANDBOX_DOCKER_TIMEOUT_SEC": SANDBOX_DOCKER_TIMEOUT_SEC,
        "SANDBOX_SESSION_IDLE_TIMEOUT_SEC": SANDBOX_SESSION_IDLE_TIMEOUT_SEC,
        "SANDBOX_SESSION_SWEEP_INTERVAL_SEC": SANDBOX_SESSION_SWEEP_INTERVAL_SEC,
        "SANDBOX_STREAM_QUEUE_MAX": SANDBOX_STREAM_QUEUE_MAX,
        "SANDBOX_ENABLE_VALIDATION": SANDBOX_ENABLE_VALIDATION,
        "SANDBOX_TMPFS_SIZE": SANDBOX_TMPFS_SIZE,
        "SANDBOX_USER": SANDBOX_USER,
        "SANDBOX_LANGUAGES_FILE": SANDBOX_LANGUAGES_FILE,
        "SANDBOX_PIDS_LIMIT": SANDBOX_PIDS_LIMIT,
        "SANDBOX_MAX_CPU": SANDBOX_MAX_CPU,
        "SANDBOX_MAX_MEM_MB": SANDBOX_MAX_MEM_MB,
        "SANDBOX_DOCKER_SECCOMP": SANDBOX_DOCKER_SECCOMP,
        "SANDBOX_TRANSCODER_MAX_PENDING": SANDBOX_TRANSCODER_MAX_PENDING,
        "SANDBOX_PREPULL_LANGUAGES": SANDBOX_PREPULL_LANGUAGES,
    }


# --- Lazy Configuration Proxies ---

class _LazyMapping(MutableMapping[str, Any]):
    """MutableMapping proxy that materializes its data on first access."""

    __slots__ = ("_loader", "_data")

    def __init__(self, loader):
        object.__setattr__(self, "_loader", loader)
        object.__setattr__(self, "_data", None)

    def _ensure(self):
        if object.__getattribute__(self, "_data") is None:
            loader = object.__getattribute__(self, "_loader")
            data = loader()
            if data is None:
                data = {}
            object.__setattr__(self, "_data", data)

    def __getitem__(self, key):
        self._ensure()
        return object.__getattribute__(self, "_data")[key]

    def __setitem__(self, key, value):
        self._ensure()
        object.__getattribute__(self, "_data")[key] = value

    def __delitem__(self, key):
        self._ensure()
        del object.__getattribute__(self, "_data")[key]

    def __iter__(self):
        self._ensure()
        return iter(object.__getattribute__(self, "_data"))

    def __len__(self):
        self._ensure()
        return len(object.__getattribute__(self, "_data"))

    def get(self, key, default=None):
        self._ensure()
        return object.__getattribute__(self, "_data").get(key, default)

    def __contains__(self, item):
        self._ensure()
        return item in object.__getattribute__(self, "_data")


class LazySettings(_LazyMapping):
    """Lazy settings mapping that also supports attribute-style access."""

    def __getattr__(self, name):
        if name in {"_loader", "_data"}:
            return object.__getattribute__(self, name)
        self._ensure()
        data = object.__getattribute__(self, "_data")
        try:
            return data[name]
        except KeyError as exc:
            raise AttributeError(name) from exc

    def __setattr__(self, name, value):
        if name in {"_loader", "_data"}:
            object.__setattr__(self, name, value)
            return
        self._ensure()
        object.__getattribute__(self, "_data")[name] = value

    def __delattr__(self, name):
        if name in {"_loader", "_data"}:
            raise AttributeError("Cannot delete internal attribute")
        self._ensure()
        data = object.__getattribute__(self, "_data")
        try:
            del data[name]
        except KeyError as exc:
            raise AttributeError(name) from exc


settings = LazySettings(load_settings)

_LOGGER_READY = True
_flush_startup_logs()


def clear_config_cache() -> None:
    """Clear cached configuration loaders (for tests or dynamic reloads)."""
    load_comprehensive_config.cache_clear()
    object.__setattr__(settings, "_data", None)

#
# End of config.py
#######################################################################################################################
