from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .db import DB_FILENAME
from .sources import DEFAULT_DOCUMENT_URL_PATTERNS, SOURCES


class ConfigError(ValueError):
	pass


DEFAULT_CONFIG_BASENAME = "agenda_watch.yaml"


DEFAULT_CONFIG_TEMPLATE = """version: 1

# SQLite database holding meetings, versions, content and the search index.
database: meetings.sqlite3

user_agent: "agenda-watch/0.1"

# Upstream systems to crawl, in order.
sources:
  - halifax
  - escribe

# One limiter shared by every request (listing, agendas, documents).
rate_limit:
  per_second: 1.0
  burst: 1

# Agenda links containing any of these are queued for document extraction.
document_url_patterns:
  - "halifax.ca/media"
  - "cdn.halifax.ca"
  - "escribemeetings.com/filestream.ashx"

crawl:
  lookback_months: 8
  initial_lookback_days: 30
  progress_every: 10

external:
  batch_size: 500
  fetch_timeout_s: 60
  pdf_timeout_s: 300
  run_budget_s: 1800
  title_suffix: "| Halifax.ca"
"""


@dataclass(frozen=True)
class Config:
	database: Path = Path(DB_FILENAME)
	user_agent: str = "agenda-watch/0.1"
	sources: Tuple[str, ...] = ("halifax", "escribe")
	rate_per_second: float = 1.0
	rate_burst: int = 1
	document_url_patterns: Tuple[str, ...] = DEFAULT_DOCUMENT_URL_PATTERNS
	lookback_months: int = 8
	initial_lookback_days: int = 30
	progress_every: int = 10
	batch_size: int = 500
	fetch_timeout_s: float = 60.0
	pdf_timeout_s: float = 300.0
	run_budget_s: float = 1800.0
	title_suffix: str = "| Halifax.ca"
	path: Optional[Path] = field(default=None, compare=False)


def _xdg_config_home() -> Path:
	base = os.environ.get("XDG_CONFIG_HOME")
	if base:
		return Path(base)
	home = os.environ.get("HOME")
	if home:
		return Path(home) / ".config"
	return Path.home() / ".config"


def default_config_path() -> Path:
	return _xdg_config_home() / "agenda-watch" / "config.yaml"


def resolve_config_path(explicit: Optional[str], *, prefer_xdg: bool = False) -> Optional[Path]:
	"""Resolve the config file path.

	Precedence:
	1) explicit CLI arg
	2) AGENDA_WATCH_CONFIG env var
	3) XDG config file (if exists)
	4) local ./agenda_watch.yaml (if exists)

	Returns None when nothing is found so callers fall back to defaults. With
	prefer_xdg (used by --init-config) the XDG location is returned instead.
	"""

	if explicit:
		return Path(explicit)

	env_path = os.environ.get("AGENDA_WATCH_CONFIG")
	if env_path:
		return Path(env_path)

	xdg = default_config_path()
	if xdg.exists() or prefer_xdg:
		return xdg

	local = Path.cwd() / DEFAULT_CONFIG_BASENAME
	if local.exists():
		return local

	return None


def init_config(path: Path, *, overwrite: bool = False) -> Path:
	"""Create a starter config file.

	If overwrite is False and the path exists, this is a no-op.
	Returns the path.
	"""

	if path.exists() and not overwrite:
		return path

	path.parent.mkdir(parents=True, exist_ok=True)
	path.write_text(DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
	return path


def load_config(path: Optional[Path]) -> Config:
	if path is None:
		return Config()

	try:
		with path.open("r", encoding="utf-8") as f:
			data = yaml.safe_load(f) or {}
	except FileNotFoundError as e:
		raise ConfigError(f"Config not found: {path}. Create one with: --init-config") from e
	except Exception as e:
		raise ConfigError(f"Failed to read config YAML: {path}") from e

	if not isinstance(data, dict):
		raise ConfigError("Config YAML must be a mapping (top-level object).")

	return config_from_dict(data, path=path)


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
	value = data.get(name)
	if value is None:
		return {}
	if not isinstance(value, dict):
		raise ConfigError(f"Config field '{name}' must be an object.")
	return value


def _number(section: Dict[str, Any], key: str, default: float, *, where: str) -> float:
	value = section.get(key)
	if value is None:
		return default
	try:
		out = float(value)
	except Exception as e:
		raise ConfigError(f"Config field '{where}.{key}' must be a number.") from e
	if out <= 0:
		raise ConfigError(f"Config field '{where}.{key}' must be positive.")
	return out


def _str_list(value: Any, *, where: str) -> List[str]:
	if not isinstance(value, list) or not value:
		raise ConfigError(f"Config field '{where}' must be a non-empty list.")
	out: List[str] = []
	for item in value:
		if not isinstance(item, str) or not item.strip():
			raise ConfigError(f"Config field '{where}' must only contain non-empty strings.")
		out.append(item.strip())
	return out


def config_from_dict(data: Dict[str, Any], *, path: Optional[Path] = None) -> Config:
	defaults = Config()

	database = data.get("database", str(defaults.database))
	if not isinstance(database, str) or not database.strip():
		raise ConfigError("Config field 'database' must be a non-empty string.")
	db_path = Path(database).expanduser()
	if path is not None and not db_path.is_absolute():
		db_path = path.parent / db_path

	user_agent = data.get("user_agent", defaults.user_agent)
	if not isinstance(user_agent, str) or not user_agent.strip():
		raise ConfigError("Config field 'user_agent' must be a non-empty string.")

	sources = defaults.sources
	if "sources" in data:
		sources = tuple(s.lower() for s in _str_list(data["sources"], where="sources"))
		for s in sources:
			if s not in SOURCES:
				raise ConfigError(
					f"Config field 'sources' has unsupported source '{s}'. "
					f"Supported: {', '.join(sorted(SOURCES))}."
				)

	patterns = defaults.document_url_patterns
	if "document_url_patterns" in data:
		patterns = tuple(_str_list(data["document_url_patterns"], where="document_url_patterns"))

	rate = _section(data, "rate_limit")
	crawl = _section(data, "crawl")
	external = _section(data, "external")

	title_suffix = external.get("title_suffix", defaults.title_suffix)
	if not isinstance(title_suffix, str):
		raise ConfigError("Config field 'external.title_suffix' must be a string.")

	return Config(
		database=db_path,
		user_agent=user_agent.strip(),
		sources=sources,
		rate_per_second=_number(rate, "per_second", defaults.rate_per_second, where="rate_limit"),
		rate_burst=int(_number(rate, "burst", defaults.rate_burst, where="rate_limit")),
		document_url_patterns=patterns,
		lookback_months=int(_number(crawl, "lookback_months", defaults.lookback_months, where="crawl")),
		initial_lookback_days=int(_number(crawl, "initial_lookback_days", defaults.initial_lookback_days, where="crawl")),
		progress_every=int(_number(crawl, "progress_every", defaults.progress_every, where="crawl")),
		batch_size=int(_number(external, "batch_size", defaults.batch_size, where="external")),
		fetch_timeout_s=_number(external, "fetch_timeout_s", defaults.fetch_timeout_s, where="external"),
		pdf_timeout_s=_number(external, "pdf_timeout_s", defaults.pdf_timeout_s, where="external"),
		run_budget_s=_number(external, "run_budget_s", defaults.run_budget_s, where="external"),
		title_suffix=title_suffix,
		path=path,
	)
