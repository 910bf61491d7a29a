# -*- coding: utf-8 -*-
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
import yaml

from bulkgen.domain.errors import ConfigurationError

SUPPORTED_BOTS = ("midjourney",)


@dataclass
class SessionConfig:
    token: str = ""
    user_agent: str = ""
    language: str = ""
    locale: str = ""
    super_properties: str = ""
    cookie: str = ""


@dataclass
class AppConfig:
    bot: str
    channel_id: str
    guild_id: str
    proxy: str
    session_file: str
    output_dir: str
    album: str
    prefix: str
    suffix: str
    prompts: List[str]
    variation: bool
    upscale: bool
    download: bool
    thumbnail: bool
    concurrency: int
    # minimum spacing between two admissions, seconds
    wait: float
    timeout_task: float
    timeout_grace: float
    timeout_http: float
    debug: bool = False
    session: SessionConfig = field(default_factory=SessionConfig)
    # optional path to config yaml
    config_yaml_path: Optional[str] = None


def _get_int(env_name: str, default: int) -> int:
    """
    Read integer from environment or return default.
    """
    val = os.getenv(env_name)
    if val is None or val == "":
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    val = os.getenv(env_name)
    if val is None or val == "":
        return default
    try:
        return float(val)
    except ValueError:
        return default


def _get_bool(env_name: str, default: bool) -> bool:
    val = os.getenv(env_name)
    if val is None or val == "":
        return default
    return val.strip().lower() in ("1", "true", "yes", "on")


def _load_yaml_config(path: str) -> Dict[str, Any]:
    """
    Load YAML config if path exists. Always returns a dict.
    """
    if not path or not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def _dot_get(d: Mapping[str, Any], path: str) -> Any:
    """
    Safe dot-path getter for nested dictionaries.
    Returns None when the path is missing.
    """
    cur: Any = d
    for p in path.split("."):
        if not isinstance(cur, Mapping) or p not in cur:  # type: ignore[operator]
            return None
        cur = cur[p]  # type: ignore[index]
    return cur


def _yget_str(yml: Mapping[str, Any], path: str, default: str = "") -> str:
    """
    Get string value from YAML with fallback.
    If the value is not a string, tries to coerce simple primitives to str.
    """
    v = _dot_get(yml, path)
    if v is None:
        return default
    if isinstance(v, str):
        return v
    if isinstance(v, (int, float, bool)):
        return str(v)
    return default


def _yget_int(yml: Mapping[str, Any], path: str, default: int) -> int:
    v = _dot_get(yml, path)
    if isinstance(v, bool):
        return default
    if isinstance(v, int):
        return v
    if isinstance(v, str):
        try:
            return int(v)
        except ValueError:
            return default
    return default


def _yget_float(yml: Mapping[str, Any], path: str, default: float) -> float:
    v = _dot_get(yml, path)
    if isinstance(v, bool):
        return default
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str):
        try:
            return float(v)
        except ValueError:
            return default
    return default


def _yget_bool(yml: Mapping[str, Any], path: str, default: bool) -> bool:
    v = _dot_get(yml, path)
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return default


def _yget_list(yml: Mapping[str, Any], path: str) -> List[str]:
    v = _dot_get(yml, path)
    if isinstance(v, list):
        return [str(x) for x in v if isinstance(x, (str, int, float))]
    if isinstance(v, str) and v.strip():
        return [v]
    return []


def load_session(path: str) -> SessionConfig:
    """
    Read session values (token, user agent, cookie...) from a YAML session file.
    Env vars DISCORD_TOKEN and USER_AGENT override the file.
    """
    yml = _load_yaml_config(path)
    session = SessionConfig(
        token=_yget_str(yml, "token"),
        user_agent=_yget_str(yml, "user-agent"),
        language=_yget_str(yml, "language"),
        locale=_yget_str(yml, "locale"),
        super_properties=_yget_str(yml, "super-properties"),
        cookie=_yget_str(yml, "cookie").replace("\n", ""),
    )
    session.token = os.getenv("DISCORD_TOKEN") or session.token
    session.user_agent = os.getenv("USER_AGENT") or session.user_agent
    return session


def check_session(cfg: AppConfig) -> None:
    """
    Validate everything a run needs before anything touches the network.
    """
    if not cfg.session.token:
        raise ConfigurationError("missing token")
    if not cfg.session.user_agent:
        raise ConfigurationError("missing user agent")
    if not cfg.session.cookie:
        raise ConfigurationError("missing cookie")
    if not cfg.session.language:
        raise ConfigurationError("missing language")
    if not cfg.bot:
        raise ConfigurationError("missing bot name")
    if cfg.bot not in SUPPORTED_BOTS:
        raise ConfigurationError(f"unsupported bot: {cfg.bot}")
    if not cfg.channel_id:
        raise ConfigurationError("missing channel")
    if not cfg.output_dir:
        raise ConfigurationError("missing output directory")
    if not cfg.prompts:
        raise ConfigurationError("missing prompt")
    if cfg.concurrency < 1:
        raise ConfigurationError("concurrency must be at least 1")


def load_config() -> AppConfig:
    load_dotenv()

    # Optional config.yml overlay
    config_yaml_path_raw = os.getenv("CONFIG_YAML") or ""
    config_yaml_path = config_yaml_path_raw.strip()
    yml = _load_yaml_config(config_yaml_path)

    bot = (os.getenv("BOT") or _yget_str(yml, "bot", "midjourney")).strip().lower()

    # Discord settings
    channel_id = os.getenv("DISCORD_CHANNEL") or _yget_str(yml, "discord.channel", "")
    guild_id = os.getenv("DISCORD_GUILD") or _yget_str(yml, "discord.guild", "")
    proxy = os.getenv("PROXY") or _yget_str(yml, "discord.proxy", "")
    session_file = os.getenv("SESSION_FILE") or _yget_str(yml, "session", "session.yaml")

    # Album and output
    output_dir = os.getenv("OUTPUT_DIR") or _yget_str(yml, "output", "output")
    album = os.getenv("ALBUM") or _yget_str(yml, "album", "")
    if not album:
        album = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")

    # Prompts
    prefix = os.getenv("PROMPT_PREFIX") or _yget_str(yml, "prefix", "")
    suffix = os.getenv("PROMPT_SUFFIX") or _yget_str(yml, "suffix", "")
    prompts_env = os.getenv("PROMPTS") or ""
    if prompts_env.strip():
        prompts = [p.strip() for p in prompts_env.split(";") if p.strip()]
    else:
        prompts = _yget_list(yml, "prompts")

    # Stages and artifacts
    variation = _get_bool("VARIATION", _yget_bool(yml, "variation", False))
    upscale = _get_bool("UPSCALE", _yget_bool(yml, "upscale", False))
    download = _get_bool("DOWNLOAD", _yget_bool(yml, "download", True))
    thumbnail = _get_bool("THUMBNAIL", _yget_bool(yml, "thumbnail", True))

    # Limits
    concurrency = _get_int("CONCURRENCY", _yget_int(yml, "concurrency", 1))
    wait = _get_float("WAIT", _yget_float(yml, "wait", 0.0))

    # Timeouts
    timeout_task = _get_float("TIMEOUT_TASK", _yget_float(yml, "timeouts.task", 900.0))
    timeout_grace = _get_float("TIMEOUT_GRACE", _yget_float(yml, "timeouts.grace", 30.0))
    timeout_http = _get_float("TIMEOUT_HTTP", _yget_float(yml, "timeouts.http", 60.0))

    debug = _get_bool("DEBUG", _yget_bool(yml, "debug", False))

    cfg = AppConfig(
        bot=bot,
        channel_id=channel_id,
        guild_id=guild_id,
        proxy=proxy,
        session_file=session_file,
        output_dir=output_dir,
        album=album,
        prefix=prefix,
        suffix=suffix,
        prompts=prompts,
        variation=variation,
        upscale=upscale,
        download=download,
        thumbnail=thumbnail,
        concurrency=concurrency,
        wait=max(0.0, wait),
        timeout_task=timeout_task,
        timeout_grace=max(0.0, timeout_grace),
        timeout_http=timeout_http,
        debug=debug,
        session=load_session(session_file),
        config_yaml_path=config_yaml_path or None,
    )
    check_session(cfg)

    os.makedirs(cfg.output_dir, exist_ok=True)
    return cfg
