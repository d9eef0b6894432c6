from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping

from azure.identity import DefaultAzureCredential
from azure.keyvault.secrets import SecretClient
from dotenv import find_dotenv, load_dotenv

from utils.periods import is_iso_date

# Simple in-process cache for secrets
_SECRET_CACHE: dict[str, str] = {}

# Secrets that must be present before the harvester touches the network
REMOTE_KEYS = ("API_BASE_URL", "API_PERSON_ID", "API_COOKIE")


class ConfigError(Exception):
    """Required configuration is missing or malformed."""


def get_secret(name: str, default: str | None = None) -> str | None:
    """
    Return secret value from environment if present; otherwise fetch from Azure Key Vault.
    Falls back to `default` if neither source is available. Values are cached per-process.
    Supports KV names that disallow underscores by trying hyphenated variants.
    """
    # 1) Env precedence (easy local override for dev/testing)
    if name in os.environ and os.environ[name]:
        return os.environ[name]

    # Back-compat alias: connection string under its legacy names
    if name == "MongoDb-Connection-String":
        legacy = (
            os.getenv("MONGODB_CONNECTION_STRING")
            or os.getenv("MONGO_CONN")
            or os.getenv("MONGO_URI")
            or os.getenv("MONGODB_URI")
        )
        if legacy:
            return legacy

    # 2) Cache
    if name in _SECRET_CACHE:
        return _SECRET_CACHE[name]

    # 3) Azure Key Vault (only when a vault is configured)
    vault_url = os.getenv("KEY_VAULT_URL", "")
    if vault_url:
        lookup_names = [name]
        # Azure KV secret names cannot contain underscores; try a hyphenated variant
        if "_" in name:
            lookup_names.append(name.replace("_", "-"))
        try:
            client = SecretClient(vault_url=vault_url, credential=DefaultAzureCredential())
            for _nm in lookup_names:
                try:
                    secret = client.get_secret(_nm)
                except Exception:
                    continue
                val = getattr(secret, "value", None)
                if isinstance(val, str) and val:
                    _SECRET_CACHE[name] = val
                    return val
            logging.warning(
                "Secrets: '%s' not found in Key Vault (tried: %s). Using default if provided.",
                name,
                ", ".join(lookup_names),
            )
        except Exception as e:
            logging.warning("Secrets: failed to fetch '%s' from Key Vault: %s", name, e)

    # 4) Fallback
    return default


def _int_env(env: Mapping[str, str], key: str, default: int) -> int:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None


def _bool_env(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = (env.get(key) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _today_utc() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


@dataclass(frozen=True)
class ScoreConfig:
    api_base_url: str = ""
    person_id: str = ""
    cookie: str = ""

    delay_ms: int = 800
    page_size: int = 100
    max_page: int = 10
    max_retries: int = 3
    request_timeout: float = 15.0
    discover_page_size: int = 200
    max_discover_pages: int = 50
    enable_discovery: bool = True

    daily_limit: int = 45
    target_date: str = field(default_factory=_today_utc)
    target_month: str = ""
    force_update: bool = False
    extra_users: tuple[str, ...] = ()
    user_list_file: str = "user-list.txt"

    max_write_retries: int = 3
    store_backend: str = "mongo"
    data_root: str = "."
    mongo_uri: str | None = None
    db_name: str = "Score_Cloud"

    def require_remote(self) -> None:
        missing = [
            key
            for key, val in zip(REMOTE_KEYS, (self.api_base_url, self.person_id, self.cookie))
            if not val
        ]
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")

    def require_target_date(self) -> None:
        if not is_iso_date(self.target_date):
            raise ConfigError(f"Target date must be YYYY-MM-DD, got {self.target_date!r}")

    @property
    def masked_base_url(self) -> str:
        """Base URL with any user:password@ part hidden, for logs and snapshot metadata."""
        url = self.api_base_url
        if "//" in url and "@" in url:
            scheme, rest = url.split("//", 1)
            return f"{scheme}//***@{rest.split('@', 1)[1]}"
        return url


def load_config(env: Mapping[str, str] | None = None) -> ScoreConfig:
    """
    Build the run configuration once at process start.

    `.env` files are loaded first (never overriding the real environment); the three
    remote credentials and the Mongo connection string go through `get_secret` so
    they can live in Key Vault.
    """
    if env is None:
        dotenv_path = find_dotenv(usecwd=True)
        if dotenv_path:
            load_dotenv(dotenv_path=dotenv_path, override=False)
            logging.info("Loaded .env via find_dotenv: %s", dotenv_path)
        env = os.environ
        base_url = get_secret("API_BASE_URL") or ""
        person_id = get_secret("API_PERSON_ID") or ""
        cookie = get_secret("API_COOKIE") or ""
        mongo_uri = get_secret("MongoDb-Connection-String")
    else:
        base_url = env.get("API_BASE_URL", "")
        person_id = env.get("API_PERSON_ID", "")
        cookie = env.get("API_COOKIE", "")
        mongo_uri = env.get("MongoDb-Connection-String") or env.get("MONGODB_CONNECTION_STRING")

    extra = tuple(u.strip() for u in (env.get("EXTRA_USERS") or "").split(",") if u.strip())

    cfg = ScoreConfig(
        api_base_url=base_url.rstrip("/"),
        person_id=person_id,
        cookie=cookie,
        delay_ms=_int_env(env, "FETCH_DELAY", 800),
        page_size=_int_env(env, "PAGE_SIZE", 100),
        max_page=_int_env(env, "MAX_PAGE", 10),
        max_retries=_int_env(env, "MAX_RETRIES", 3),
        discover_page_size=_int_env(env, "DISCOVER_PAGE_SIZE", 200),
        max_discover_pages=_int_env(env, "MAX_DISCOVER_PAGES", 50),
        enable_discovery=_bool_env(env, "ENABLE_DISCOVERY", True),
        daily_limit=_int_env(env, "DAILY_LIMIT", 45),
        target_date=(env.get("TARGET_DATE") or "").strip() or _today_utc(),
        target_month=(env.get("TARGET_MONTH") or "").strip(),
        force_update=_bool_env(env, "FORCE_UPDATE", False),
        extra_users=extra,
        user_list_file=env.get("USER_LIST_FILE") or "user-list.txt",
        max_write_retries=_int_env(env, "MAX_WRITE_RETRIES", 3),
        store_backend=(env.get("SCORE_STORE") or "mongo").strip().lower(),
        data_root=env.get("SCORE_DATA_ROOT") or ".",
        mongo_uri=mongo_uri,
        db_name=env.get("SCORE_DB_NAME") or "Score_Cloud",
    )
    if cfg.store_backend not in {"mongo", "local"}:
        raise ConfigError(f"SCORE_STORE must be 'mongo' or 'local', got {cfg.store_backend!r}")
    cfg.require_target_date()
    return cfg
