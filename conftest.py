import dataclasses

import pytest

from inject_proxy.config import ProxyConfig
from inject_proxy.rewrite.path_matcher import compile_exclude_patterns

TEST_UPSTREAM = "http://origin.internal:8080"
TEST_PAYLOAD = '<script defer src="https://analytics.example.com/script.js"></script>'


@pytest.fixture
def proxy_config():
    """Factory for a ProxyConfig pointed at a test upstream.

    ``exclude_paths`` takes the raw comma-separated form used in the environment.
    """

    def _make(exclude_paths=None, **overrides):
        config = ProxyConfig(upstream=TEST_UPSTREAM, inject_html=TEST_PAYLOAD)
        if exclude_paths is not None:
            overrides["exclude_patterns"] = compile_exclude_patterns(exclude_paths)
        return dataclasses.replace(config, **overrides)

    return _make
