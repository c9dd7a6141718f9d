from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import UnsupportedLanguage
from .models import LanguageId, Limits


class LimitsConfig(BaseModel):
    """Base per-job ceilings; language profiles scale them."""
    model_config = ConfigDict(frozen=True)

    cpu_seconds: int = 12     # kept above wall_timeout_seconds
    memory_bytes: int = 256 * 1024 * 1024
    wall_timeout_seconds: float = 10.0
    nofile: int = 64
    nproc: int = 512          # RLIMIT_NPROC counts every process of the uid
    fsize_bytes: int = 16 * 1024 * 1024


class LanguageProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    runtime: List[str]
    compiler: Optional[List[str]] = None
    timeout_multiplier: float = 1.0
    memory_multiplier: float = 1.0
    cpu_multiplier: float = 1.0
    memory_rlimit: str = "as"
    nofile: Optional[int] = None   # compilers and linkers open many files


DEFAULT_LANGUAGES: Dict[str, Dict[str, Any]] = {
    "python": {"runtime": ["python3"]},
    "javascript": {"runtime": ["node"], "memory_multiplier": 2.0, "memory_rlimit": "data"},
    "typescript": {
        "runtime": ["node", "--experimental-strip-types", "--no-warnings"],
        "memory_multiplier": 2.0,
        "memory_rlimit": "data",
    },
    "rust": {
        "runtime": [],
        "compiler": ["rustc", "--edition", "2021"],
        "nofile": 1024,
        "timeout_multiplier": 3.0,
        "memory_multiplier": 4.0,
        "cpu_multiplier": 3.0,
        "memory_rlimit": "data",
    },
    "swift": {
        "runtime": [],
        "compiler": ["swiftc", "-Onone"],
        "nofile": 1024,
        "timeout_multiplier": 4.0,
        "memory_multiplier": 4.0,
        "cpu_multiplier": 4.0,
        "memory_rlimit": "data",
    },
}


class Settings(BaseSettings):
    """Engine configuration. Frozen: read-only once the service starts."""

    # ---- paths ----
    jobs_dir: Path = Path(tempfile.gettempdir()) / "labrunner-jobs"
    db_url: str = "sqlite:///./labrunner.db"
    limits_file: Path = Path("conf/limits.yaml")

    # ---- scheduler ----
    pool_size: int = 4
    queue_size: int = 32

    # ---- isolation ----
    iso_strategy: str = "ns"          # none | ns | cgroups | ns+cgroups
    allow_network: bool = False
    require_isolation: bool = False   # fail jobs when namespaces are unavailable
    python_bin: str = sys.executable  # interpreter running the launcher

    # ---- bounds ----
    max_output_chars: int = 50_000
    max_diagnostic_chars: int = 4_000
    max_test_cases: int = 20
    max_code_bytes: int = 64 * 1024
    poll_interval_s: float = 0.05
    kill_grace_s: float = 2.0

    limits: LimitsConfig = LimitsConfig()
    languages: Dict[str, LanguageProfile] = Field(
        default_factory=lambda: {k: LanguageProfile(**v) for k, v in DEFAULT_LANGUAGES.items()}
    )

    # ---- http ----
    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: List[str] = ["*"]

    # env prefix SBX_*
    model_config = SettingsConfigDict(env_prefix="SBX_", extra="ignore", frozen=True)

    def profile(self, language: LanguageId | str) -> LanguageProfile:
        key = language.value if isinstance(language, LanguageId) else str(language)
        prof = self.languages.get(key)
        if prof is None or not prof.enabled:
            raise UnsupportedLanguage(f"unsupported language: {key}")
        return prof

    def supported_languages(self) -> List[LanguageId]:
        return [lang for lang in LanguageId
                if lang.value in self.languages and self.languages[lang.value].enabled]

    def limits_for(self, language: LanguageId | str) -> Limits:
        prof = self.profile(language)
        base = self.limits
        return Limits(
            cpu_seconds=max(1, int(round(base.cpu_seconds * prof.cpu_multiplier))),
            memory_bytes=int(base.memory_bytes * prof.memory_multiplier),
            wall_timeout_seconds=base.wall_timeout_seconds * prof.timeout_multiplier,
            nofile=prof.nofile or base.nofile,
            nproc=base.nproc,
            fsize_bytes=base.fsize_bytes,
            memory_rlimit=prof.memory_rlimit,
        )


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    return data if isinstance(data, dict) else {}


def _merge_languages(base: Dict[str, LanguageProfile], raw: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {k: v.model_dump() for k, v in base.items()}
    for name, prof in (raw or {}).items():
        if isinstance(prof, dict):
            merged[name] = {**merged.get(name, {}), **prof}
    return merged


def load_settings(**overrides: Any) -> Settings:
    """Precedence: keyword overrides, then SBX_* env, then conf/*.yaml, then defaults."""
    # 0) base from SBX_* env
    s = Settings()

    # 1) conf/sandbox.yaml (or SANDBOX_CONF)
    data = _read_yaml(Path(os.environ.get("SANDBOX_CONF", "conf/sandbox.yaml")))
    scheduler = data.get("scheduler") or {}
    isolation = data.get("isolation") or {}
    output = data.get("output") or {}

    update: Dict[str, Any] = s.model_dump()
    for key in ("jobs_dir", "db_url", "host", "port", "cors_origins", "python_bin"):
        if key in data:
            update[key] = data[key]
    for key in ("pool_size", "queue_size"):
        if key in scheduler:
            update[key] = scheduler[key]
    if "strategy" in isolation:
        update["iso_strategy"] = isolation["strategy"]
    for key in ("allow_network", "require_isolation"):
        if key in isolation:
            update[key] = isolation[key]
    for key in ("max_output_chars", "max_diagnostic_chars", "max_test_cases", "max_code_bytes"):
        if key in output:
            update[key] = output[key]
    update["languages"] = _merge_languages(s.languages, data.get("languages") or {})

    # 2) conf/limits.yaml (optional)
    limits_path = Path(overrides.get("limits_file", update["limits_file"]))
    limits_raw = _read_yaml(limits_path)
    if limits_raw:
        update["limits"] = {**s.limits.model_dump(), **limits_raw}

    # SBX_* environment variables beat both YAML files
    base = s.model_dump()
    for key in s.model_fields_set:
        update[key] = base[key]

    update.update(overrides)
    return Settings(**update)
