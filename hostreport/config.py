from __future__ import annotations
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional
import json
import logging
import math
import os

log = logging.getLogger(__name__)

APP_DIR = Path.home() / ".hostreport"
CFG_PATH = APP_DIR / "config.json"

# Environment overrides, applied after the config file.
ENV_OVERRIDES = {
    "HOSTREPORT_DISK_WARNING": "disk_warning",
    "HOSTREPORT_DISK_CRITICAL": "disk_critical",
    "HOSTREPORT_MEMORY_WARNING": "memory_warning",
    "HOSTREPORT_MEMORY_CRITICAL": "memory_critical",
}


class ConfigError(ValueError):
    """Invalid configuration. Fatal before any collection starts."""


@dataclass
class AppConfig:
    # Digest thresholds (ratios in [0, 1])
    disk_warning: float = 0.90
    disk_critical: float = 0.95
    memory_warning: float = 0.10      # floor on *remaining* memory
    memory_critical: float = 0.05

    # Collection
    command_timeout_seconds: float = 3.0
    max_socket_samples: int = 20
    proc_root: str = "/proc"

    log_level: str = "WARNING"


@dataclass(frozen=True)
class DigestThresholds:
    disk_warning: float = 0.90
    disk_critical: float = 0.95
    memory_warning: float = 0.10
    memory_critical: float = 0.05

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "DigestThresholds":
        thresholds = cls(
            disk_warning=cfg.disk_warning,
            disk_critical=cfg.disk_critical,
            memory_warning=cfg.memory_warning,
            memory_critical=cfg.memory_critical,
        )
        thresholds.validate()
        return thresholds

    def validate(self) -> "DigestThresholds":
        for name, value in asdict(self).items():
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"{name} must be a number, got {value!r}")
            if math.isnan(value) or not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name} must be between 0 and 1, got {value}")

        if self.disk_warning > self.disk_critical:
            raise ConfigError(
                f"disk_warning ({self.disk_warning * 100:.2f}%) must be <= "
                f"disk_critical ({self.disk_critical * 100:.2f}%)"
            )
        if self.memory_warning < self.memory_critical:
            raise ConfigError(
                f"memory_warning ({self.memory_warning * 100:.2f}%) must be >= "
                f"memory_critical ({self.memory_critical * 100:.2f}%)"
            )
        return self


def ensure_dirs() -> None:
    APP_DIR.mkdir(parents=True, exist_ok=True)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """
    Read the JSON config file, then apply environment overrides.
    A missing default file is created with defaults; a malformed file
    or a value of the wrong type raises ConfigError.
    """
    cfg_path = Path(path) if path else CFG_PATH
    if not cfg_path.exists():
        cfg = AppConfig()
        if path is None:
            try:
                save_config(cfg)
            except OSError as e:
                log.info("Could not write default config to %s: %s", cfg_path, e)
    else:
        try:
            data = json.loads(cfg_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigError(f"cannot read {cfg_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{cfg_path} must contain a JSON object")
        known = {k: data[k] for k in data if k in AppConfig.__dataclass_fields__}
        cfg = AppConfig(**known)

    _apply_env(cfg)
    _check_types(cfg)
    return cfg


def _apply_env(cfg: AppConfig) -> None:
    for var, attr in ENV_OVERRIDES.items():
        raw = os.environ.get(var)
        if raw is None or raw.strip() == "":
            continue
        try:
            setattr(cfg, attr, float(raw))
        except ValueError as e:
            raise ConfigError(f"{var} must be a number, got {raw!r}") from e


def save_config(cfg: AppConfig) -> None:
    ensure_dirs()
    CFG_PATH.write_text(json.dumps(cfg.__dict__, indent=2), encoding="utf-8")


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_types(cfg: AppConfig) -> None:
    for name in ("disk_warning", "disk_critical", "memory_warning", "memory_critical"):
        if not _is_number(getattr(cfg, name)):
            raise ConfigError(f"{name} must be a number, got {getattr(cfg, name)!r}")

    timeout = cfg.command_timeout_seconds
    if not _is_number(timeout) or math.isnan(timeout) or timeout <= 0:
        raise ConfigError(f"command_timeout_seconds must be a positive number, got {timeout!r}")

    samples = cfg.max_socket_samples
    if not isinstance(samples, int) or isinstance(samples, bool) or samples < 0:
        raise ConfigError(f"max_socket_samples must be a non-negative integer, got {samples!r}")

    for name in ("proc_root", "log_level"):
        value = getattr(cfg, name)
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"{name} must be a non-empty string, got {value!r}")
