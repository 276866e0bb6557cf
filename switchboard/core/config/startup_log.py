from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Final
from urllib.parse import SplitResult, urlsplit, urlunsplit

from switchboard.core.config.settings import BASE_DIR, Settings, get_settings

logger = logging.getLogger(__name__)

_ENV_PREFIX: Final[str] = "SWITCHBOARD_"
_PROXY_ENV_KEYS: Final[tuple[str, ...]] = ("HTTP_PROXY", "HTTPS_PROXY", "NO_PROXY", "ALL_PROXY")
_SECRET_TOKENS: Final[tuple[str, ...]] = ("ACCESS_TOKEN", "REFRESH_TOKEN", "SECRET", "PASSWORD", "COOKIE")
_REDACT_VALUE: Final[str] = "***"
_PROXY_USERINFO_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<scheme>[a-zA-Z][a-zA-Z0-9+.-]*://)?(?P<userinfo>[^@/]+)@(?P<rest>.*)$"
)


@dataclass(frozen=True, slots=True)
class StartupEnvSnapshot:
    values: dict[str, str | None]

    @classmethod
    def from_process_env(cls) -> StartupEnvSnapshot:
        values: dict[str, str | None] = {
            key: os.environ.get(key) or os.environ.get(key.lower()) for key in _PROXY_ENV_KEYS
        }
        values.update({key: value for key, value in os.environ.items() if key.startswith(_ENV_PREFIX)})
        return cls(values=values)


def log_startup_config() -> None:
    settings = get_settings()
    if not settings.startup_log_config and not settings.startup_log_env:
        return

    env_files = (BASE_DIR / ".env", BASE_DIR / ".env.local")
    env_file_status = ", ".join(f"{path.name}={'present' if path.exists() else 'missing'}" for path in env_files)
    logger.info("Startup config: env_files=[%s]", env_file_status)

    if settings.startup_log_env:
        _log_env_snapshot(StartupEnvSnapshot.from_process_env())
    if settings.startup_log_config:
        _log_settings(settings)


def _log_env_snapshot(snapshot: StartupEnvSnapshot) -> None:
    logger.info("Startup env snapshot (allowlist):")
    for key, value in sorted(snapshot.values.items()):
        if value is None:
            logger.info("  %s=<unset>", key)
        elif key in _PROXY_ENV_KEYS:
            logger.info("  %s=%s", key, _redact_proxy_url(value))
        else:
            logger.info("  %s=%s", key, _redact_value(key, value))


def _log_settings(settings: Settings) -> None:
    data = settings.model_dump(mode="json")
    logger.info("Startup settings snapshot:")
    for key, value in sorted(data.items()):
        logger.info("  %s=%s", key, _redact_value(key, value))


def _redact_value(key: str, value: object) -> object:
    upper = key.upper()
    if any(token in upper for token in _SECRET_TOKENS):
        return _REDACT_VALUE if value else value
    return value


def _redact_proxy_url(value: str) -> str:
    if not value:
        return value

    # Scheme-less "user:pass@host" parses as a path, so match it first.
    match = _PROXY_USERINFO_RE.match(value)
    if match:
        userinfo = match.group("userinfo")
        redacted_userinfo = f"{_REDACT_VALUE}:{_REDACT_VALUE}" if ":" in userinfo else _REDACT_VALUE
        return f"{match.group('scheme') or ''}{redacted_userinfo}@{match.group('rest')}"

    try:
        split = urlsplit(value)
    except ValueError:
        return _REDACT_VALUE
    if "@" not in split.netloc:
        return value

    userinfo, hostport = split.netloc.rsplit("@", 1)
    redacted_userinfo = f"{_REDACT_VALUE}:{_REDACT_VALUE}" if ":" in userinfo else _REDACT_VALUE
    return urlunsplit(
        SplitResult(
            scheme=split.scheme,
            netloc=f"{redacted_userinfo}@{hostport}",
            path=split.path,
            query=split.query,
            fragment=split.fragment,
        )
    )
