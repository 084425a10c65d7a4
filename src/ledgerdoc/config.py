"""ledgerdoc configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site — not in this module)
  2. Environment variables  (LEDGERDOC_LEDGER_NAME, LEDGERDOC_REGION)
  3. Per-project ledgerdoc.yaml
  4. Global ~/.ledgerdoc/config.yaml  (connection defaults only — no AWS credentials)
  5. Hardcoded defaults

Global config must never contain AWS credentials; boto3 reads them from the
environment or ~/.aws. All YAML reads use yaml.safe_load() — never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".ledgerdoc"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "ledgerdoc.yaml"

# Keys that look like credentials — forbidden in global config.
# Matches aws_access_key_id, aws_secret_access_key, aws_session_token, password.
# Does NOT match retry_limit, endpoint_url, max_concurrent_transactions.
_CREDENTIAL_RE: re.Pattern[str] = re.compile(
    r"access[_\-]?key"
    r"|_token$"
    r"|^token$"
    r"|secret"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(["ledger", "mapper", "compiler", "repository", "tables"])

_DEPTH_POLICIES: frozenset[str] = frozenset(["accept", "reject"])
_PARAM_STYLES: frozenset[str] = frozenset(["literal", "parameterized"])


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class LedgerCfg:
    """Ledger connection (ledgerdoc.yaml: ledger:)."""

    name: str = ""
    region: str | None = None
    endpoint_url: str | None = None
    retry_limit: int = 4
    max_concurrent_transactions: int = 10


@dataclass
class MapperCfg:
    """Validation depth (ledgerdoc.yaml: mapper:).

    Attributes:
        max_depth: Nesting level at which validation stops.
        depth_policy: ``accept`` binds deeper data unchecked, ``reject`` fails
            the document with ``depth_exceeded``.
    """

    max_depth: int = 3
    depth_policy: str = "accept"


@dataclass
class CompilerCfg:
    """Statement compilation (ledgerdoc.yaml: compiler:)."""

    param_style: str = "parameterized"  # parameterized | literal


@dataclass
class RepositoryCfg:
    """Repository defaults (ledgerdoc.yaml: repository:)."""

    auto_create_tables: bool = True
    timestamps: bool = False


@dataclass
class TableCfg:
    """One table declaration (ledgerdoc.yaml: tables.<Name>:).

    Attributes:
        fields: Raw field mapping, turned into a SchemaModel by the registry.
        timestamps: Per-table override of repository.timestamps.
    """

    fields: dict[str, Any] = field(default_factory=dict)
    timestamps: bool | None = None


@dataclass
class LedgerdocConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    ledger: LedgerCfg = field(default_factory=LedgerCfg)
    mapper: MapperCfg = field(default_factory=MapperCfg)
    compiler: CompilerCfg = field(default_factory=CompilerCfg)
    repository: RepositoryCfg = field(default_factory=RepositoryCfg)
    tables: dict[str, TableCfg] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_credentials(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any credential-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _CREDENTIAL_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  AWS credentials must come from the environment or ~/.aws, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


def _choice(value: Any, allowed: frozenset[str], key: str) -> str:
    text = str(value).strip().lower()
    if text not in allowed:
        raise ConfigError(f"{key} must be one of {', '.join(sorted(allowed))}, got '{value}'.")
    return text


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _parse_tables(raw: Any) -> dict[str, TableCfg]:
    if not isinstance(raw, dict):
        raise ConfigError(f"'tables' must be a mapping of table name to declaration, got {type(raw).__name__}.")
    tables: dict[str, TableCfg] = {}
    for name, decl in raw.items():
        decl = decl or {}
        if not isinstance(decl, dict) or not isinstance(decl.get("fields", {}), dict):
            raise ConfigError(f"tables.{name}: expected a mapping with a 'fields' mapping.")
        timestamps = decl.get("timestamps")
        tables[str(name)] = TableCfg(
            fields=dict(decl.get("fields") or {}),
            timestamps=None if timestamps is None else bool(timestamps),
        )
    return tables


def _cfg_from_dict(data: dict[str, Any]) -> LedgerdocConfig:
    """Build a *LedgerdocConfig* from a merged raw YAML dict."""
    cfg = LedgerdocConfig()

    if "ledger" in data:
        lg = data["ledger"] or {}
        cfg.ledger = LedgerCfg(
            name=str(lg.get("name", cfg.ledger.name)),
            region=lg.get("region") or cfg.ledger.region,
            endpoint_url=lg.get("endpoint_url") or cfg.ledger.endpoint_url,
            retry_limit=int(lg.get("retry_limit", cfg.ledger.retry_limit)),
            max_concurrent_transactions=int(
                lg.get("max_concurrent_transactions", cfg.ledger.max_concurrent_transactions)
            ),
        )

    if "mapper" in data:
        m = data["mapper"] or {}
        max_depth = int(m.get("max_depth", cfg.mapper.max_depth))
        if max_depth < 1:
            raise ConfigError(f"mapper.max_depth must be at least 1, got {max_depth}.")
        cfg.mapper = MapperCfg(
            max_depth=max_depth,
            depth_policy=_choice(
                m.get("depth_policy", cfg.mapper.depth_policy), _DEPTH_POLICIES, "mapper.depth_policy"
            ),
        )

    if "compiler" in data:
        c = data["compiler"] or {}
        cfg.compiler = CompilerCfg(
            param_style=_choice(
                c.get("param_style", cfg.compiler.param_style), _PARAM_STYLES, "compiler.param_style"
            ),
        )

    if "repository" in data:
        r = data["repository"] or {}
        cfg.repository = RepositoryCfg(
            auto_create_tables=bool(r.get("auto_create_tables", cfg.repository.auto_create_tables)),
            timestamps=bool(r.get("timestamps", cfg.repository.timestamps)),
        )

    if "tables" in data:
        cfg.tables = _parse_tables(data["tables"] or {})

    return cfg


def _apply_env_overrides(cfg: LedgerdocConfig) -> LedgerdocConfig:
    """Apply LEDGERDOC_* environment variable overrides (layer 2)."""
    if name := os.environ.get("LEDGERDOC_LEDGER_NAME"):
        cfg.ledger.name = name
    if region := os.environ.get("LEDGERDOC_REGION"):
        cfg.ledger.region = region
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> LedgerdocConfig:
    """Load and return a merged *LedgerdocConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *ledgerdoc.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged *LedgerdocConfig* with env var overrides applied.

    Raises:
        ConfigError: If global config contains credential-like fields, or a
            section holds an invalid value.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_credentials(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-project config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)

    # Layer 3: env var overrides
    cfg = _apply_env_overrides(cfg)

    return cfg


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.ledgerdoc/config.yaml`` with defaults if it does not exist.

    Creates parent directory with mode 0o700 and the config file with
    mode 0o600 (owner-readable only).

    Args:
        global_config_path: Override path (for testing).

    Returns:
        Path to the global config file.
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# ledgerdoc global configuration — connection defaults only.\n"
            "# NEVER store AWS credentials here — use the environment or ~/.aws:\n"
            "#   export AWS_PROFILE=...\n"
            "\n"
            "ledger:\n"
            "  retry_limit: 4\n"
            "  max_concurrent_transactions: 10\n"
            "\n"
            "compiler:\n"
            "  param_style: parameterized\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
