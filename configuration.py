# -*- codeing = utf-8 -*-
# @Create: 2025-06-02 9:12 a.m.
# @Update: 2025-10-24 11:53 p.m.
import configparser
import datetime as _dt
import json
import logging
import math
import os
import re
import tempfile
from dataclasses import dataclass, field, replace
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

LOGGER = logging.getLogger(__name__)

HOME_ENV = "SERVMON_HOME"
DEFAULT_HOME_NAME = ".servmon"
CONFIG_DIRECTORY_NAME = "Config"
CONFIG_FILENAME = "Config.ini"
TARGETS_FILENAME = "servers.json"

SUPPORTED_PROTOCOLS = frozenset({"http", "tcp", "ping"})
NOTIFICATION_MODES = frozenset({"inapp", "email", "none"})
THEMES = frozenset({"auto", "light", "dark"})

DEFAULT_CHECK_INTERVAL = 30.0
DEFAULT_CHECK_TIMEOUT = 10.0
DEFAULT_THEME = "auto"
DEFAULT_NOTIFICATION_MODE = "inapp"
DEFAULT_NOTIFICATION_COOLDOWN = 10
DEFAULT_REFRESH_INTERVAL = 30

PREFERENCES_SECTION = "Preferences"
THEME_OPTION = "theme"
NOTIFICATIONS_SECTION = "Notifications"
MODE_OPTION = "mode"
COOLDOWN_OPTION = "cooldown"
REFRESH_OPTION = "refresh_interval"
USER_EMAIL_OPTION = "user_email"
MAIL_SECTION = "Mail"
LOGGING_SECTION = "Logging"

MAIL_ENV_PREFIX = "MAIL_"
MAIL_ENV_SUFFIXES = {
    "smtp_server": "SMTP_SERVER",
    "smtp_port": "SMTP_PORT",
    "username": "USERNAME",
    "password": "PASSWORD",
    "from_addr": "FROM",
    "use_starttls": "USE_STARTTLS",
    "use_ssl": "USE_SSL",
}
MAIL_ENV_MAP = {
    key: f"{MAIL_ENV_PREFIX}{suffix}"
    for key, suffix in MAIL_ENV_SUFFIXES.items()
}
MAIL_BOOL_OPTIONS = frozenset({"use_starttls", "use_ssl"})
DEFAULT_MAIL_CONFIGURATION = {
    "smtp_server": "",
    "smtp_port": 587,
    "username": "",
    "password": "",
    "from_addr": "",
    "use_starttls": True,
    "use_ssl": False,
}
_BOOL_TRUE_VALUES = {"1", "true", "yes", "on"}
_BOOL_FALSE_VALUES = {"0", "false", "no", "off"}

_LOG_HANDLER_FLAG = "_servmon_managed"
_LOG_HANDLER_KIND = "_servmon_kind"
_LOG_HANDLER_FILE = "file"
_LOG_HANDLER_CONSOLE = "console"
_DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DEFAULT_LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
_DEFAULT_LOG_FILENAME = "system.log"
_DEFAULT_LOG_MAX_BYTES = 10 * 1024 * 1024
_DEFAULT_LOG_BACKUP_COUNT = 5
_DEFAULT_LOG_DIRECTORY_NAME = "Log"


@dataclass(frozen=True)
class TargetStatus:
    """Outcome of the most recent health check of a target."""

    is_up: bool = False
    response_time_ms: int = 0
    last_check: Optional[_dt.datetime] = None
    last_error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_up": self.is_up,
            "response_time_ms": self.response_time_ms,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> "TargetStatus":
        if not payload:
            return cls()
        raw_check = payload.get("last_check")
        last_check = None
        if raw_check:
            try:
                last_check = _dt.datetime.fromisoformat(str(raw_check))
            except ValueError:
                LOGGER.warning("config.targets.invalid_timestamp value=%s",
                               raw_check)
        return cls(
            is_up=bool(payload.get("is_up", False)),
            response_time_ms=int(payload.get("response_time_ms") or 0),
            last_check=last_check,
            last_error=str(payload.get("last_error") or ""),
        )


@dataclass(frozen=True)
class Target:
    """Describe a single monitored endpoint."""

    id: str
    name: str
    address: str
    protocol: str
    interval: str = "30s"
    timeout: str = "10s"
    status: TargetStatus = field(default_factory=TargetStatus)

    def with_status(self, status: TargetStatus) -> "Target":
        return replace(self, status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.address,
            "type": self.protocol,
            "interval": self.interval,
            "timeout": self.timeout,
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Target":
        identifier = str(payload.get("id") or "").strip()
        if not identifier:
            raise ValueError("Target entry is missing its id")
        return cls(
            id=identifier,
            name=str(payload.get("name") or ""),
            address=str(payload.get("url") or payload.get("address") or ""),
            protocol=str(payload.get("type") or payload.get("protocol") or ""),
            interval=str(payload.get("interval") or ""),
            timeout=str(payload.get("timeout") or ""),
            status=TargetStatus.from_dict(payload.get("status")),
        )


@dataclass(frozen=True)
class Settings:
    """User preferences persisted in ``Config.ini``."""

    theme: str = DEFAULT_THEME
    notification_mode: str = DEFAULT_NOTIFICATION_MODE
    notification_cooldown: int = DEFAULT_NOTIFICATION_COOLDOWN
    refresh_interval: int = DEFAULT_REFRESH_INTERVAL
    user_email: str = ""
    mail: Mapping[str, Any] = field(
        default_factory=lambda: dict(DEFAULT_MAIL_CONFIGURATION))


@dataclass(frozen=True)
class LoggingSettings:
    """Represent the parsed logging configuration values."""

    level_name: str
    level: int
    file_path: Path
    max_bytes: int
    backup_count: int
    fmt: str
    datefmt: Optional[str]
    console: bool


# --- durations ---------------------------------------------------------

_DURATION_TOKEN = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)", re.IGNORECASE)
_DURATION_PATTERN = re.compile(r"(?:\d+(?:\.\d+)?(?:ms|s|m|h))+",
                               re.IGNORECASE)
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: object, default: float) -> float:
    """Convert ``"30s"``, ``"1m"``, ``"1h30m"`` or ``"15"`` to seconds.

    Empty, unparsable or non-positive values yield ``default``.
    """

    text = str(value).strip() if value is not None else ""
    if not text:
        return default

    lowered = text.lower()
    numeric = lowered[:-1] if lowered.endswith("s") and not lowered.endswith(
        "ms") else lowered
    try:
        seconds = float(numeric)
    except ValueError:
        if not _DURATION_PATTERN.fullmatch(lowered):
            return default
        seconds = sum(
            float(amount) * _DURATION_UNITS[unit]
            for amount, unit in _DURATION_TOKEN.findall(lowered))

    if not math.isfinite(seconds) or seconds <= 0:
        return default
    return seconds


def resolve_check_timings(target: Target) -> Tuple[float, float]:
    """Return ``(interval, timeout)`` in seconds for ``target``."""

    return (
        parse_duration(target.interval, DEFAULT_CHECK_INTERVAL),
        parse_duration(target.timeout, DEFAULT_CHECK_TIMEOUT),
    )


# --- locations ---------------------------------------------------------

def get_home_directory() -> Path:
    """Return the application home.

    ``SERVMON_HOME`` wins over the default ``~/.servmon``.
    """

    env_path = os.environ.get(HOME_ENV, "").strip()
    if env_path:
        return Path(env_path).expanduser().resolve()
    return (Path.home() / DEFAULT_HOME_NAME).resolve()


def get_config_directory() -> Path:
    return get_home_directory() / CONFIG_DIRECTORY_NAME


def _config_file_path() -> Path:
    return get_config_directory() / CONFIG_FILENAME


def _targets_file_path() -> Path:
    return get_config_directory() / TARGETS_FILENAME


def _load_config_parser(
        *,
        ensure_dir: bool = False) -> Tuple[configparser.RawConfigParser, Path]:
    config_path = _config_file_path()
    if ensure_dir:
        config_path.parent.mkdir(parents=True, exist_ok=True)

    parser = configparser.RawConfigParser()
    if config_path.exists():
        try:
            parser.read(os.fspath(config_path), encoding="utf-8")
        except configparser.Error as exc:
            LOGGER.error("config.settings.malformed path=%s error=%s",
                         config_path, exc)
            parser = configparser.RawConfigParser()
    return parser, config_path


def _write_config_parser(parser: configparser.RawConfigParser,
                         path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as configfile:
        parser.write(configfile)


def _set_config_value(parser: configparser.RawConfigParser, section: str,
                      option: str, value: object) -> bool:
    text = str(value)
    if not parser.has_section(section):
        parser.add_section(section)
    if parser.get(section, option, fallback=None) == text:
        return False
    parser.set(section, option, text)
    return True


# --- scalar parsing ----------------------------------------------------

def _parse_bool_option(value: object, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if not text:
        return default
    if text in _BOOL_TRUE_VALUES:
        return True
    if text in _BOOL_FALSE_VALUES:
        return False
    raise ValueError(f"Unable to parse boolean value: {value!r}")


def _parse_int_option(value: object,
                      *,
                      default: int,
                      minimum: Optional[int] = None) -> int:
    text = str(value).strip() if value is not None else ""
    if not text:
        return int(default)
    try:
        result = int(text)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Unable to parse integer value: {value!r}") from exc
    if minimum is not None and result < minimum:
        raise ValueError(f"Value {result} is smaller than the minimum {minimum}")
    return result


def _parse_log_level(value: object, *, default: str = "INFO") -> Tuple[str, int]:
    text = str(value).strip().upper() if value is not None else ""
    text = text or default
    aliases = {"WARN": "WARNING", "FATAL": "CRITICAL", "TRACE": "NOTSET"}
    mapped = aliases.get(text, text)
    level_value = getattr(logging, mapped, None)
    if isinstance(level_value, int):
        return mapped, level_value
    try:
        numeric_level = int(text)
    except ValueError as exc:
        raise ValueError(f"Unable to parse log level: {value!r}") from exc
    if numeric_level < 0:
        raise ValueError(
            f"Log level must be a non-negative integer: {numeric_level}")
    return str(logging.getLevelName(numeric_level)).upper(), numeric_level


_SIZE_UNITS = {"B": 1, "KB": 1024, "MB": 1024**2, "GB": 1024**3}


def _parse_size_value(value: object, *, default: int) -> int:
    text = str(value).strip() if value is not None else ""
    if not text:
        return max(int(default), 0)
    match = re.fullmatch(r"(\d+(?:\.\d+)?)\s*([kmg]?b)?", text, re.IGNORECASE)
    if not match:
        raise ValueError(f"Unable to parse log size: {value!r}")
    factor = _SIZE_UNITS[(match.group(2) or "B").upper()]
    return max(int(float(match.group(1)) * factor), 0)


# --- logging -----------------------------------------------------------

def get_logging_settings() -> LoggingSettings:
    """Read the ``[Logging]`` section into ``LoggingSettings``."""

    parser, _ = _load_config_parser()

    def _option(name: str, fallback: str = "") -> str:
        return parser.get(LOGGING_SECTION, name, fallback=fallback)

    raw_level = _option("log_level", "INFO")
    try:
        level_name, level_value = _parse_log_level(raw_level)
    except ValueError as exc:
        raise ValueError(
            f"[Logging].log_level is invalid: {raw_level!r}") from exc

    raw_max_size = _option("log_max_size")
    try:
        max_bytes = _parse_size_value(raw_max_size,
                                      default=_DEFAULT_LOG_MAX_BYTES)
    except ValueError as exc:
        raise ValueError(
            f"[Logging].log_max_size is invalid: {raw_max_size!r}") from exc

    raw_backup_count = _option("log_backup_count")
    try:
        backup_count = _parse_int_option(raw_backup_count,
                                         default=_DEFAULT_LOG_BACKUP_COUNT,
                                         minimum=0)
    except ValueError as exc:
        raise ValueError(
            f"[Logging].log_backup_count is invalid: {raw_backup_count!r}"
        ) from exc

    raw_console = _option("log_console", "true")
    try:
        console_enabled = _parse_bool_option(raw_console, default=True)
    except ValueError as exc:
        raise ValueError(
            f"[Logging].log_console is invalid: {raw_console!r}") from exc

    raw_directory = _option("log_directory").strip()
    directory = (Path(raw_directory).expanduser() if raw_directory else
                 get_home_directory() / _DEFAULT_LOG_DIRECTORY_NAME)
    filename = _option("log_filename").strip() or _DEFAULT_LOG_FILENAME

    return LoggingSettings(
        level_name=level_name,
        level=level_value,
        file_path=(directory / filename).resolve(),
        max_bytes=max_bytes,
        backup_count=backup_count,
        fmt=_option("log_format").strip() or _DEFAULT_LOG_FORMAT,
        datefmt=_option("log_datefmt").strip() or _DEFAULT_LOG_DATEFMT,
        console=console_enabled,
    )


def _discard_handler(root_logger: logging.Logger,
                     handler: logging.Handler) -> None:
    root_logger.removeHandler(handler)
    try:
        handler.close()
    except Exception:  # pragma: no cover - best effort cleanup
        pass


def configure_logging(
    *,
    replace_existing: bool = False,
    install_console: Optional[bool] = None,
) -> LoggingSettings:
    """Install rotating-file and console handlers on the root logger.

    :param replace_existing: Drop handlers previously installed here first.
    :param install_console: Force the console handler on or off.
    :return: The applied ``LoggingSettings``.
    """

    settings = get_logging_settings()
    console_enabled = (settings.console
                       if install_console is None else bool(install_console))
    settings.file_path.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.level)
    formatter = logging.Formatter(settings.fmt, settings.datefmt or None)

    managed = [
        handler for handler in root_logger.handlers
        if getattr(handler, _LOG_HANDLER_FLAG, False)
    ]
    if replace_existing:
        for handler in managed:
            _discard_handler(root_logger, handler)
        managed = []

    file_handler = None
    console_handler = None
    for handler in managed:
        kind = getattr(handler, _LOG_HANDLER_KIND, None)
        if kind == _LOG_HANDLER_FILE:
            if os.path.abspath(getattr(handler, "baseFilename", "")) != str(
                    settings.file_path):
                _discard_handler(root_logger, handler)
                continue
            file_handler = handler
        elif kind == _LOG_HANDLER_CONSOLE:
            console_handler = handler

    if file_handler is None:
        file_handler = RotatingFileHandler(
            os.fspath(settings.file_path),
            maxBytes=settings.max_bytes,
            backupCount=settings.backup_count,
            encoding="utf-8",
        )
        setattr(file_handler, _LOG_HANDLER_FLAG, True)
        setattr(file_handler, _LOG_HANDLER_KIND, _LOG_HANDLER_FILE)
        root_logger.addHandler(file_handler)
    else:
        file_handler.maxBytes = settings.max_bytes
        file_handler.backupCount = settings.backup_count
    file_handler.setLevel(settings.level)
    file_handler.setFormatter(formatter)

    if console_enabled:
        if console_handler is None:
            console_handler = logging.StreamHandler()
            setattr(console_handler, _LOG_HANDLER_FLAG, True)
            setattr(console_handler, _LOG_HANDLER_KIND, _LOG_HANDLER_CONSOLE)
            root_logger.addHandler(console_handler)
        console_handler.setLevel(settings.level)
        console_handler.setFormatter(formatter)
    elif console_handler is not None:
        _discard_handler(root_logger, console_handler)

    return settings


def reset_logging_configuration() -> None:
    """Remove handlers previously added by ``configure_logging``."""

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if getattr(handler, _LOG_HANDLER_FLAG, False):
            _discard_handler(root_logger, handler)


# --- settings ----------------------------------------------------------

def _coerce_mail_values(values: Mapping[str, Any], *,
                        source: str) -> Dict[str, Any]:
    normalised: Dict[str, Any] = dict(DEFAULT_MAIL_CONFIGURATION)
    for key, value in values.items():
        if key not in DEFAULT_MAIL_CONFIGURATION:
            continue
        if key in MAIL_BOOL_OPTIONS:
            try:
                normalised[key] = _parse_bool_option(
                    value, default=DEFAULT_MAIL_CONFIGURATION[key])
            except ValueError:
                LOGGER.warning("config.mail.invalid_bool source=%s key=%s",
                               source, key)
        elif key == "smtp_port":
            try:
                normalised[key] = _parse_int_option(
                    value, default=DEFAULT_MAIL_CONFIGURATION[key], minimum=1)
            except ValueError:
                LOGGER.warning("config.mail.invalid_port source=%s value=%s",
                               source, value)
        else:
            normalised[key] = str(value).strip()
    return normalised


def _load_mail_overrides_from_env() -> Dict[str, str]:
    return {
        key: os.environ[env_name]
        for key, env_name in MAIL_ENV_MAP.items()
        if os.environ.get(env_name)
    }


def read_mail_configuration(
        parser: Optional[configparser.RawConfigParser] = None
) -> Dict[str, Any]:
    """Return relay settings from ``[Mail]``, overridden by ``MAIL_*``."""

    if parser is None:
        parser, _ = _load_config_parser()
    values: Dict[str, Any] = {}
    if parser.has_section(MAIL_SECTION):
        values.update(parser.items(MAIL_SECTION))
    values.update(_load_mail_overrides_from_env())
    return _coerce_mail_values(values, source="configuration")


def read_settings() -> Settings:
    """Load settings; a missing file or bad values fall back to defaults."""

    parser, config_path = _load_config_parser()
    if not config_path.exists():
        LOGGER.info("config.settings.defaults path=%s", config_path)

    theme = parser.get(PREFERENCES_SECTION, THEME_OPTION,
                       fallback=DEFAULT_THEME).strip().lower()
    if theme not in THEMES:
        LOGGER.warning("config.settings.invalid_theme value=%s", theme)
        theme = DEFAULT_THEME

    mode = parser.get(NOTIFICATIONS_SECTION, MODE_OPTION,
                      fallback=DEFAULT_NOTIFICATION_MODE).strip().lower()
    if mode not in NOTIFICATION_MODES:
        LOGGER.warning("config.settings.invalid_mode value=%s", mode)
        mode = DEFAULT_NOTIFICATION_MODE

    def _int_option(option: str, default: int) -> int:
        raw_value = parser.get(NOTIFICATIONS_SECTION, option, fallback="")
        try:
            return _parse_int_option(raw_value, default=default, minimum=0)
        except ValueError:
            LOGGER.warning("config.settings.invalid_int option=%s value=%s",
                           option, raw_value)
            return default

    return Settings(
        theme=theme,
        notification_mode=mode,
        notification_cooldown=_int_option(COOLDOWN_OPTION,
                                          DEFAULT_NOTIFICATION_COOLDOWN),
        refresh_interval=_int_option(REFRESH_OPTION, DEFAULT_REFRESH_INTERVAL),
        user_email=parser.get(NOTIFICATIONS_SECTION,
                              USER_EMAIL_OPTION,
                              fallback="").strip(),
        mail=read_mail_configuration(parser),
    )


def write_settings(settings: Settings) -> None:
    """Persist ``settings`` into ``Config.ini``, keeping unrelated sections."""

    if settings.notification_mode not in NOTIFICATION_MODES:
        raise ValueError(
            f"Notification mode must be one of {sorted(NOTIFICATION_MODES)}")
    if settings.theme not in THEMES:
        raise ValueError(f"Theme must be one of {sorted(THEMES)}")
    if int(settings.notification_cooldown) < 0:
        raise ValueError("Notification cooldown must not be negative")

    parser, config_path = _load_config_parser(ensure_dir=True)
    changed = False
    for section, option, value in (
        (PREFERENCES_SECTION, THEME_OPTION, settings.theme),
        (NOTIFICATIONS_SECTION, MODE_OPTION, settings.notification_mode),
        (NOTIFICATIONS_SECTION, COOLDOWN_OPTION,
         int(settings.notification_cooldown)),
        (NOTIFICATIONS_SECTION, REFRESH_OPTION, int(settings.refresh_interval)),
        (NOTIFICATIONS_SECTION, USER_EMAIL_OPTION, settings.user_email.strip()),
    ):
        if _set_config_value(parser, section, option, value):
            changed = True

    mail_values = _coerce_mail_values(settings.mail, source="settings")
    for key, value in mail_values.items():
        if key in MAIL_BOOL_OPTIONS:
            value = "true" if value else "false"
        if _set_config_value(parser, MAIL_SECTION, key, value):
            changed = True

    if changed or not config_path.exists():
        _write_config_parser(parser, config_path)


# --- targets -----------------------------------------------------------

def read_target_list(path: Union[str, os.PathLike, None] = None) -> List[Target]:
    """Load the persisted targets.

    A missing file is an empty list; malformed content raises ``ValueError``.
    """

    target_path = Path(path) if path is not None else _targets_file_path()
    if not target_path.exists():
        return []

    text = target_path.read_text(encoding="utf-8")
    if not text.strip():
        return []
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Target file {target_path} is not valid JSON: {exc}") from exc

    if not isinstance(payload, list):
        raise ValueError(f"Target file {target_path} must contain a list")

    targets = []
    for index, entry in enumerate(payload):
        if not isinstance(entry, Mapping):
            raise ValueError(
                f"Target #{index} in {target_path} must be an object")
        targets.append(Target.from_dict(entry))
    return targets


def write_target_list(targets: Iterable[Target],
                      path: Union[str, os.PathLike, None] = None) -> Path:
    """Write targets to a temporary file then swap it into place."""

    target_path = Path(path) if path is not None else _targets_file_path()
    target_path.parent.mkdir(parents=True, exist_ok=True)
    payload = [target.to_dict() for target in targets]

    handle = tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=os.fspath(target_path.parent),
        prefix=f".{target_path.name}.",
        suffix=".tmp",
        delete=False,
    )
    try:
        with handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(handle.name, target_path)
    except BaseException:
        try:
            os.unlink(handle.name)
        except OSError:
            pass
        raise
    return target_path
