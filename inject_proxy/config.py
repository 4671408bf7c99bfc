"""
Resolved proxy configuration.

Everything the rewriting pipeline needs is parsed once at startup into an
immutable ``ProxyConfig``. No other module reads raw environment state for
these options; the application keeps the instance on ``app.state.config``.
"""

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

from inject_proxy.rewrite.path_matcher import compile_exclude_patterns

DEFAULT_UPSTREAM = "https://xingzheng.kahiether.com"
DEFAULT_INJECT_HTML = (
    '<script defer src="https://analytics.kahiether.com/script.js" '
    'data-website-id="xxxx"></script>'
)
DEFAULT_INJECT_TARGET = "</head>"
DEFAULT_CT_MATCH = "text/html"
DEFAULT_EXCLUDE_PATHS = "^/wp-admin,^/wp-json,^/xmlrpc.php"
DEFAULT_HEALTH_PATH = "/healthz"
DEFAULT_PROXY_TIMEOUT = 300.0


class ConfigError(ValueError):
    """Raised when the startup configuration cannot be resolved."""


class Placement(str, Enum):
    BEFORE = "before"
    AFTER = "after"


class Occurrence(str, Enum):
    FIRST_ONLY = "first_only"
    ALL = "all"


@dataclass(frozen=True)
class ProxyConfig:
    upstream: str = DEFAULT_UPSTREAM
    inject_html: str = DEFAULT_INJECT_HTML
    inject_target: str = DEFAULT_INJECT_TARGET
    inject_mode: Placement = Placement.BEFORE
    inject_once: Occurrence = Occurrence.FIRST_ONLY
    content_type_match: str = DEFAULT_CT_MATCH
    required_header: str = ""
    exclude_patterns: Tuple[re.Pattern, ...] = field(
        default_factory=lambda: compile_exclude_patterns(DEFAULT_EXCLUDE_PATHS)
    )
    health_path: str = DEFAULT_HEALTH_PATH
    proxy_timeout: float = DEFAULT_PROXY_TIMEOUT

    def describe(self) -> Dict[str, Any]:
        """Summary of the resolved options, as logged at startup."""
        return {
            "upstream": self.upstream,
            "injectHtml": self.inject_html,
            "target": self.inject_target,
            "mode": self.inject_mode.value,
            "once": self.inject_once is Occurrence.FIRST_ONLY,
            "ctMatch": self.content_type_match,
            "ifHeader": self.required_header or None,
            "excludedPaths": [p.pattern for p in self.exclude_patterns],
            "health": self.health_path,
            "timeout": self.proxy_timeout,
        }


def _get(environ: Mapping[str, str], name: str, default: str) -> str:
    # Unset and empty both fall back to the default
    return environ.get(name) or default


def _parse_placement(raw: str) -> Placement:
    try:
        return Placement(raw.strip().lower())
    except ValueError:
        raise ConfigError(
            f"INJECT_MODE must be 'before' or 'after', got {raw!r}"
        ) from None


def _parse_upstream(raw: str) -> str:
    parsed = urlparse(raw.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"UPSTREAM must be an absolute http(s) URL, got {raw!r}")
    return raw.strip().rstrip("/")


def _parse_health_path(raw: str) -> str:
    if not raw.startswith("/"):
        raise ConfigError(f"HEALTH_PATH must start with '/', got {raw!r}")
    return raw


def _parse_timeout(raw: str) -> float:
    try:
        timeout = float(raw)
    except ValueError:
        raise ConfigError(f"PROXY_TIMEOUT must be a number, got {raw!r}") from None
    if timeout <= 0:
        raise ConfigError(f"PROXY_TIMEOUT must be positive, got {raw!r}")
    return timeout


def load_config(environ: Optional[Mapping[str, str]] = None) -> ProxyConfig:
    """
    Build the proxy configuration from environment variables.

    Raises:
        ConfigError: if any option is malformed, including exclusion patterns
            that do not compile as regular expressions.
    """
    if environ is None:
        environ = os.environ

    once = _get(environ, "INJECT_ONCE", "true").lower() == "true"

    try:
        exclude_patterns = compile_exclude_patterns(
            _get(environ, "INJECT_EXCLUDE_PATHS", DEFAULT_EXCLUDE_PATHS)
        )
    except ValueError as e:
        raise ConfigError(str(e)) from e

    return ProxyConfig(
        upstream=_parse_upstream(_get(environ, "UPSTREAM", DEFAULT_UPSTREAM)),
        # An explicitly empty INJECT_HTML disables injection
        inject_html=environ.get("INJECT_HTML", DEFAULT_INJECT_HTML),
        inject_target=_get(environ, "INJECT_TARGET", DEFAULT_INJECT_TARGET),
        inject_mode=_parse_placement(_get(environ, "INJECT_MODE", "before")),
        inject_once=Occurrence.FIRST_ONLY if once else Occurrence.ALL,
        # An explicitly empty INJECT_CT_MATCH disables the content-type filter
        content_type_match=environ.get("INJECT_CT_MATCH", DEFAULT_CT_MATCH).lower(),
        required_header=environ.get("INJECT_IF_HEADER", "").strip().lower(),
        exclude_patterns=exclude_patterns,
        health_path=_parse_health_path(
            _get(environ, "HEALTH_PATH", DEFAULT_HEALTH_PATH)
        ),
        proxy_timeout=_parse_timeout(
            _get(environ, "PROXY_TIMEOUT", str(int(DEFAULT_PROXY_TIMEOUT)))
        ),
    )
