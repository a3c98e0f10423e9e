from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Mapping, Optional


DEFAULT_BASE_URL = "https://cloud.langfuse.com"
DEFAULT_DISCOVERY_TTL_S = 60.0
DEFAULT_RETENTION_TTL_S = 24 * 60 * 60.0
DEFAULT_DEDUP_CAP = 500
DEFAULT_CHILD_UNITS = frozenset({"Task", "Agent"})

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _parse_dotenv(path: Path) -> Dict[str, str]:
    if not path.exists() or not path.is_file():
        return {}
    out: Dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, val = line.split("=", 1)
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export "):].strip()
        val = val.strip().strip('"').strip("'")
        if key:
            out[key] = val
    return out


def _home_hooktrace_dir() -> Path:
    return Path.home() / ".hooktrace"


def resolve_state_dir(environ: Mapping[str, str]) -> Path:
    raw = (environ.get("HOOKTRACE_STATE_DIR") or "").strip()
    if raw:
        return Path(raw).expanduser()
    return _home_hooktrace_dir() / "state"


def _flag(raw: Optional[str], default: bool) -> bool:
    val = (raw or "").strip().lower()
    if val in _TRUTHY:
        return True
    if val in _FALSY:
        return False
    return default


def _float(raw: Optional[str], default: float) -> float:
    try:
        val = float((raw or "").strip())
    except ValueError:
        return default
    return val if val > 0 else default


def _int(raw: Optional[str], default: int) -> int:
    try:
        val = int((raw or "").strip())
    except ValueError:
        return default
    return val if val > 0 else default


def _names(raw: Optional[str], default: FrozenSet[str]) -> FrozenSet[str]:
    if not raw or not raw.strip():
        return default
    return frozenset(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class LangfuseSettings:
    public_key: Optional[str]
    secret_key: Optional[str]
    base_url: str

    @property
    def configured(self) -> bool:
        return bool(self.public_key and self.secret_key)


@dataclass(frozen=True)
class Settings:
    enabled: bool
    debug: bool
    state_dir: Path
    langfuse: LangfuseSettings
    discovery_ttl_s: float = DEFAULT_DISCOVERY_TTL_S
    retention_ttl_s: float = DEFAULT_RETENTION_TTL_S
    dedup_cap: int = DEFAULT_DEDUP_CAP
    child_units: FrozenSet[str] = DEFAULT_CHILD_UNITS

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    *,
    state_dir: Optional[Path] = None,
    debug: Optional[bool] = None,
) -> Settings:
    """
    Build Settings from the environment.

    A `.env` next to the state directory (i.e. `~/.hooktrace/.env` by
    default) takes precedence over the process environment, so hook
    commands configured without an inherited shell still pick up keys.
    """
    env = dict(os.environ if environ is None else environ)
    resolved_state_dir = (state_dir or resolve_state_dir(env)).expanduser().resolve()
    env_from_file = _parse_dotenv(resolved_state_dir.parent / ".env")

    def get(key: str) -> Optional[str]:
        return env_from_file.get(key) or env.get(key)

    public_key = (get("LANGFUSE_PUBLIC_KEY") or "").strip()
    secret_key = (get("LANGFUSE_SECRET_KEY") or "").strip()
    base_url = (get("LANGFUSE_BASE_URL") or get("LANGFUSE_HOST") or DEFAULT_BASE_URL).strip().rstrip("/")

    return Settings(
        enabled=_flag(get("HOOKTRACE_ENABLED"), True),
        debug=debug if debug is not None else _flag(get("HOOKTRACE_DEBUG"), False),
        state_dir=resolved_state_dir,
        langfuse=LangfuseSettings(
            public_key=public_key or None,
            secret_key=secret_key or None,
            base_url=base_url,
        ),
        discovery_ttl_s=_float(get("HOOKTRACE_DISCOVERY_TTL_S"), DEFAULT_DISCOVERY_TTL_S),
        retention_ttl_s=_float(get("HOOKTRACE_RETENTION_TTL_S"), DEFAULT_RETENTION_TTL_S),
        dedup_cap=_int(get("HOOKTRACE_DEDUP_CAP"), DEFAULT_DEDUP_CAP),
        child_units=_names(get("HOOKTRACE_CHILD_UNITS"), DEFAULT_CHILD_UNITS),
    )
