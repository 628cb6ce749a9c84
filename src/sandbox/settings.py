from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LimitSpec(BaseModel):
    cpu_ms: int = Field(5_000, gt=0)
    wall_ms: int = Field(10_000, gt=0)
    memory_mb: int = Field(256, gt=0)
    max_output_bytes: int = Field(64 * 1024, gt=0)
    max_processes: int = Field(32, gt=0)
    network: bool = False


class Settings(BaseSettings):
    # ---- workspace / capacity ----
    jobs_dir: Path = Path("/srv/sbx/jobs")
    pool_size: int = Field(4, gt=0)
    queue_capacity: int = Field(64, gt=0)
    enforce_memory_budget: bool = True

    # ---- admission ----
    max_source_bytes: int = Field(256 * 1024, gt=0)
    max_stdin_bytes: int = Field(1024 * 1024, ge=0)
    output_cap_bytes: int = Field(1024 * 1024, gt=0)

    # ---- limits (usually from conf/limits.yaml) ----
    default_limits: LimitSpec = LimitSpec()
    ceilings: LimitSpec = LimitSpec(
        cpu_ms=30_000, wall_ms=60_000, memory_mb=1024,
        max_output_bytes=1024 * 1024, max_processes=128, network=False,
    )
    language_limits: Dict[str, Dict[str, Any]] = {}

    # ---- isolation ----
    iso_strategy: str = "none"  # none | namespaces | cgroups | namespaces+cgroups
    sandbox_uid: Optional[int] = None
    sandbox_gid: Optional[int] = None
    # slot n runs as sandbox_uid + n, so concurrent jobs never share a uid
    sandbox_uid_per_slot: bool = False
    max_open_files: int = Field(256, gt=0)
    max_file_bytes: int = Field(16 * 1024 * 1024, gt=0)
    child_path: str = "/usr/local/bin:/usr/bin:/bin"
    runtimes: Dict[str, str] = {}

    # ---- compile step ----
    compile_fraction: float = Field(0.5, gt=0, le=1)
    compile_memory_mb: int = Field(512, gt=0)
    compile_max_processes: int = Field(64, gt=0)

    # ---- results ----
    result_retention_s: float = Field(600.0, gt=0)
    evict_on_read: bool = False
    database_url: Optional[str] = None
    callback_timeout_s: float = Field(5.0, gt=0)

    # ---- adapters ----
    adapters_file: Optional[Path] = None

    # ---- server / logging ----
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"
    log_json: bool = True

    # ---- config files ----
    limits_file: Path = Path("conf/limits.yaml")

    # env prefix SBX_*, nested keys as SBX_DEFAULT_LIMITS__WALL_MS
    model_config = SettingsConfigDict(env_prefix="SBX_", env_nested_delimiter="__", extra="ignore")

    @field_validator("iso_strategy")
    @classmethod
    def _known_strategy(cls, v: str) -> str:
        v = (v or "none").lower()
        parts = set(v.split("+"))
        if not parts <= {"none", "namespaces", "cgroups"}:
            raise ValueError(f"unknown iso_strategy '{v}'")
        return v


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except FileNotFoundError:
        return {}
    return data if isinstance(data, dict) else {}


def load_settings(**overrides: Any) -> Settings:
    """Build settings from SBX_* env, conf/sandbox.yaml and conf/limits.yaml.

    YAML values win over the environment, explicit ``overrides`` win over both.
    """
    base = Settings()

    # 1) conf/sandbox.yaml (or SANDBOX_CONF)
    data = _read_yaml(Path(os.environ.get("SANDBOX_CONF", "conf/sandbox.yaml")))

    # 2) conf/limits.yaml: only the limit sections are taken from it
    limits_file = Path(str(overrides.get("limits_file", data.get("limits_file", base.limits_file))))
    limits = _read_yaml(limits_file)
    for key in ("default_limits", "ceilings", "language_limits"):
        if key in limits:
            data[key] = limits[key]

    return Settings(**{**data, **overrides})
