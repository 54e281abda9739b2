"""Project configuration via YAML files."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .errors import ConfigurationError


MAILDEX_DIR = ".maildex"
CONFIG_FILE = "config.yaml"
SYNC_STATE_DIR = "sync-state"
FAILURES_DIR = "failures"
SEARCH_DB = "search.db"

ROOT_ENV = "MAILDEX_ROOT"
DATABASE_ENV = "MAILDEX_DATABASE"
PASSWORD_ENV = "MAILDEX_PASSWORD"


@dataclass
class AccountConfig:
    """An IMAP account configuration."""
    name: str
    host: str
    user: str
    password: str
    port: int = 993


@dataclass
class SyncSettings:
    """Batching, retry and circuit-breaker settings for sync runs."""
    batch_size: int = 50
    max_attempts: int = 4
    initial_delay: float = 2.0
    max_delay: float = 300.0
    failure_threshold: int = 5
    cooldown: float = 120.0


@dataclass
class MaildexConfig:
    """Top-level maildex project configuration."""
    database: str | None = None
    accounts: dict[str, AccountConfig] = field(default_factory=dict)
    sync: SyncSettings = field(default_factory=SyncSettings)


def find_root(start: Path | None = None) -> Path | None:
    """Find maildex project root (directory containing .maildex/).

    First checks MAILDEX_ROOT environment variable, then walks up from start/cwd.
    """
    env_root = os.environ.get(ROOT_ENV)
    if env_root:
        env_path = Path(env_root).resolve()
        if (env_path / MAILDEX_DIR).is_dir():
            return env_path

    path = (start or Path.cwd()).resolve()
    while path != path.parent:
        if (path / MAILDEX_DIR).is_dir():
            return path
        path = path.parent
    return None


def get_root(require: bool = True) -> Path:
    """Get project root, raising if not found and require=True."""
    root = find_root()
    if not root and require:
        raise ConfigurationError(
            "Not in a maildex project. Run 'maildex init' first."
        )
    return root or Path.cwd()


def get_config_path(root: Path | None = None) -> Path:
    """Get path to config.yaml."""
    root = root or get_root()
    return root / MAILDEX_DIR / CONFIG_FILE


def load_config(root: Path | None = None) -> MaildexConfig:
    """Load config from config.yaml."""
    config_path = get_config_path(root)
    if not config_path.exists():
        return MaildexConfig()

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    accounts = {}
    for name, acct_data in (data.get("accounts") or {}).items():
        accounts[name] = AccountConfig(
            name=name,
            host=acct_data.get("host", ""),
            user=acct_data.get("user", ""),
            password=acct_data.get("password", ""),
            port=acct_data.get("port", 993),
        )

    sync_data = data.get("sync") or {}
    defaults = SyncSettings()
    sync = SyncSettings(
        batch_size=int(sync_data.get("batch_size", defaults.batch_size)),
        max_attempts=int(sync_data.get("max_attempts", defaults.max_attempts)),
        initial_delay=float(sync_data.get("initial_delay", defaults.initial_delay)),
        max_delay=float(sync_data.get("max_delay", defaults.max_delay)),
        failure_threshold=int(sync_data.get("failure_threshold", defaults.failure_threshold)),
        cooldown=float(sync_data.get("cooldown", defaults.cooldown)),
    )

    return MaildexConfig(
        database=data.get("database"),
        accounts=accounts,
        sync=sync,
    )


def save_config(config: MaildexConfig, root: Path | None = None) -> None:
    """Save config to config.yaml."""
    config_path = get_config_path(root)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data: dict = {}
    if config.database:
        data["database"] = config.database
    if config.accounts:
        data["accounts"] = {}
        for name, acct in config.accounts.items():
            acct_data = {
                "host": acct.host,
                "user": acct.user,
                "password": acct.password,
            }
            if acct.port != 993:
                acct_data["port"] = acct.port
            data["accounts"][name] = acct_data
    if config.sync != SyncSettings():
        data["sync"] = {
            "batch_size": config.sync.batch_size,
            "max_attempts": config.sync.max_attempts,
            "initial_delay": config.sync.initial_delay,
            "max_delay": config.sync.max_delay,
            "failure_threshold": config.sync.failure_threshold,
            "cooldown": config.sync.cooldown,
        }

    with open(config_path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def get_account(name: str, root: Path | None = None) -> AccountConfig:
    """Get a fully specified account, applying the password env override."""
    config = load_config(root)
    acct = config.accounts.get(name)
    if not acct:
        raise ConfigurationError(f"Account '{name}' not found.")

    password = os.environ.get(PASSWORD_ENV) or acct.password
    missing = [
        key for key, value in (("host", acct.host), ("user", acct.user), ("password", password))
        if not value
    ]
    if missing:
        raise ConfigurationError(
            f"Account '{name}' is missing: {', '.join(missing)}"
        )
    return AccountConfig(
        name=acct.name,
        host=acct.host,
        user=acct.user,
        password=password,
        port=acct.port,
    )


def resolve_database_path(
    override: str | Path | None = None,
    root: Path | None = None,
) -> Path:
    """Resolve the search store path.

    Order: explicit override, MAILDEX_DATABASE, config `database`,
    then .maildex/search.db under the project root.
    """
    if override:
        return Path(override).expanduser()
    env_db = os.environ.get(DATABASE_ENV)
    if env_db:
        return Path(env_db).expanduser()

    root = root or get_root()
    config = load_config(root)
    if config.database:
        db_path = Path(config.database).expanduser()
        return db_path if db_path.is_absolute() else root / db_path
    return root / MAILDEX_DIR / SEARCH_DB


def _safe_name(name: str) -> str:
    return name.replace("/", "_")


def get_sync_state_path(account: str, root: Path | None = None) -> Path:
    """Get path to sync state file for an account."""
    root = root or get_root()
    return root / MAILDEX_DIR / SYNC_STATE_DIR / f"{_safe_name(account)}.yaml"


def get_failures_path(account: str, folder: str, root: Path | None = None) -> Path:
    """Get path to failures file for an account/folder."""
    root = root or get_root()
    return root / MAILDEX_DIR / FAILURES_DIR / f"{_safe_name(account)}_{_safe_name(folder)}.yaml"
