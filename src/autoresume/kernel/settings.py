"""Global settings for the auto-resume daemon.

Settings live in <home>/settings.yaml. The file is hand-edited, so every value
is coerced and clamped on load: a typo degrades to a default instead of
stopping the daemon.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml  # type: ignore

from ..errors import ConfigError
from ..paths import autoresume_home, ensure_home
from ..util.conv import clamp_int, clamp_number, coerce_bool
from ..util.fs import atomic_write_text

_LOG_LEVELS = ("debug", "info", "warning", "error")


@dataclass(frozen=True)
class ResumeSettings:
    post_reset_delay_sec: int = 10
    max_retries: int = 4
    verification_window_sec: int = 90
    verification_poll_ms: int = 1000
    stale_threshold_sec: int = 7200
    retry_base_delay_sec: float = 15.0
    retry_max_delay_sec: float = 300.0
    retry_on_no_targets: bool = True

    @property
    def stale_threshold_ms(self) -> float:
        return float(self.stale_threshold_sec) * 1000.0


@dataclass(frozen=True)
class DeliverySettings:
    tier_timeout_sec: float = 5.0
    transcripts_dir: str = "~/.claude/projects"

    @property
    def transcripts_path(self) -> Path:
        return Path(self.transcripts_dir).expanduser()


@dataclass(frozen=True)
class NotificationSettings:
    enabled: bool = True
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class AnalyticsSettings:
    enabled: bool = True
    retention_days: int = 30


@dataclass(frozen=True)
class PluginSettings:
    enabled: bool = False
    directory: str = ""
    hook_timeout_seconds: float = 30.0

    def plugin_dir(self, home: Optional[Path] = None) -> Path:
        if self.directory:
            return Path(self.directory).expanduser()
        return (home or autoresume_home()) / "plugins"


@dataclass(frozen=True)
class Settings:
    resume_prompt: str = "continue"
    menu_selection: str = "1"
    check_interval_seconds: int = 5
    log_level: str = "info"
    resume: ResumeSettings = field(default_factory=ResumeSettings)
    delivery: DeliverySettings = field(default_factory=DeliverySettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    analytics: AnalyticsSettings = field(default_factory=AnalyticsSettings)
    plugins: PluginSettings = field(default_factory=PluginSettings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resume_prompt": self.resume_prompt,
            "menu_selection": self.menu_selection,
            "check_interval_seconds": self.check_interval_seconds,
            "log_level": self.log_level,
            "resume": {
                "post_reset_delay_sec": self.resume.post_reset_delay_sec,
                "max_retries": self.resume.max_retries,
                "verification_window_sec": self.resume.verification_window_sec,
                "verification_poll_ms": self.resume.verification_poll_ms,
                "stale_threshold_sec": self.resume.stale_threshold_sec,
                "retry_base_delay_sec": self.resume.retry_base_delay_sec,
                "retry_max_delay_sec": self.resume.retry_max_delay_sec,
                "retry_on_no_targets": self.resume.retry_on_no_targets,
            },
            "delivery": {
                "tier_timeout_sec": self.delivery.tier_timeout_sec,
                "transcripts_dir": self.delivery.transcripts_dir,
            },
            "notifications": {
                "enabled": self.notifications.enabled,
                "timeout_seconds": self.notifications.timeout_seconds,
            },
            "analytics": {
                "enabled": self.analytics.enabled,
                "retention_days": self.analytics.retention_days,
            },
            "plugins": {
                "enabled": self.plugins.enabled,
                "directory": self.plugins.directory,
                "hook_timeout_seconds": self.plugins.hook_timeout_seconds,
            },
        }


def _section(doc: Dict[str, Any], key: str) -> Dict[str, Any]:
    v = doc.get(key)
    return v if isinstance(v, dict) else {}


def _text(value: Any, default: str) -> str:
    if value is None or isinstance(value, (dict, list)):
        return default
    s = str(value)
    return s if s.strip() else default


def settings_from_dict(doc: Dict[str, Any]) -> Settings:
    """Build Settings from a raw mapping, clamping every value into range."""
    d = Settings()
    r = _section(doc, "resume")
    dl = _section(doc, "delivery")
    n = _section(doc, "notifications")
    a = _section(doc, "analytics")
    p = _section(doc, "plugins")

    level = _text(doc.get("log_level"), d.log_level).strip().lower()
    if level == "warn":
        level = "warning"
    if level not in _LOG_LEVELS:
        level = d.log_level

    base_delay = clamp_number(r.get("retry_base_delay_sec"), d.resume.retry_base_delay_sec, min_value=0.0, max_value=3600.0)
    max_delay = clamp_number(r.get("retry_max_delay_sec"), d.resume.retry_max_delay_sec, min_value=0.0, max_value=3600.0)

    return Settings(
        resume_prompt=_text(doc.get("resume_prompt"), d.resume_prompt),
        menu_selection=_text(doc.get("menu_selection"), d.menu_selection).strip(),
        check_interval_seconds=clamp_int(doc.get("check_interval_seconds"), d.check_interval_seconds, min_value=1, max_value=60),
        log_level=level,
        resume=ResumeSettings(
            post_reset_delay_sec=clamp_int(r.get("post_reset_delay_sec"), d.resume.post_reset_delay_sec, min_value=0, max_value=300),
            max_retries=clamp_int(r.get("max_retries"), d.resume.max_retries, min_value=0, max_value=10),
            verification_window_sec=clamp_int(
                r.get("verification_window_sec"), d.resume.verification_window_sec, min_value=10, max_value=600
            ),
            verification_poll_ms=clamp_int(r.get("verification_poll_ms"), d.resume.verification_poll_ms, min_value=100, max_value=10000),
            stale_threshold_sec=clamp_int(r.get("stale_threshold_sec"), d.resume.stale_threshold_sec, min_value=60, max_value=7 * 24 * 3600),
            retry_base_delay_sec=base_delay,
            retry_max_delay_sec=max(max_delay, base_delay),
            retry_on_no_targets=coerce_bool(r.get("retry_on_no_targets"), default=d.resume.retry_on_no_targets),
        ),
        delivery=DeliverySettings(
            tier_timeout_sec=clamp_number(dl.get("tier_timeout_sec"), d.delivery.tier_timeout_sec, min_value=1.0, max_value=60.0),
            transcripts_dir=_text(dl.get("transcripts_dir"), d.delivery.transcripts_dir),
        ),
        notifications=NotificationSettings(
            enabled=coerce_bool(n.get("enabled"), default=d.notifications.enabled),
            timeout_seconds=clamp_number(n.get("timeout_seconds"), d.notifications.timeout_seconds, min_value=1.0, max_value=60.0),
        ),
        analytics=AnalyticsSettings(
            enabled=coerce_bool(a.get("enabled"), default=d.analytics.enabled),
            retention_days=clamp_int(a.get("retention_days"), d.analytics.retention_days, min_value=1, max_value=365),
        ),
        plugins=PluginSettings(
            enabled=coerce_bool(p.get("enabled"), default=d.plugins.enabled),
            directory=_text(p.get("directory"), ""),
            hook_timeout_seconds=clamp_number(p.get("hook_timeout_seconds"), d.plugins.hook_timeout_seconds, min_value=1.0, max_value=300.0),
        ),
    )


def settings_path(home: Optional[Path] = None) -> Path:
    return (home or autoresume_home()) / "settings.yaml"


def load_settings_doc(home: Optional[Path] = None) -> Dict[str, Any]:
    """Raw settings mapping; {} when missing or unreadable."""
    p = settings_path(home)
    if not p.exists():
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError):
        return {}
    return doc if isinstance(doc, dict) else {}


def load_settings(home: Optional[Path] = None) -> Settings:
    return settings_from_dict(load_settings_doc(home))


def save_settings(settings: Settings, home: Optional[Path] = None) -> Path:
    """Write settings.yaml atomically."""
    if home is None:
        home = ensure_home()
    p = settings_path(home)
    try:
        atomic_write_text(p, yaml.safe_dump(settings.to_dict(), allow_unicode=True, sort_keys=False))
    except OSError as e:
        raise ConfigError(f"failed to write {p}: {e}") from e
    return p
