import importlib
import sys

import pytest


_ENV_KEYS = [
    "WSDOT_KEY",
    "WSF_BASE_URL",
    "WSF_CONNECT_TIMEOUT_SEC",
    "WSF_READ_TIMEOUT_SEC",
    "WSF_TOTAL_TIMEOUT_SEC",
    "WSF_MAX_WORKERS",
    "WSF_SCAN_MAX_ID",
    "WSF_SCAN_BATCH_SIZE",
    "CACHE_BUCKET_MS",
    "CACHE_TTL_SEC",
    "MAX_CACHE",
    "DEFAULT_ROUTE",
    "ENABLE_HSTS",
]


@pytest.fixture
def load_module(monkeypatch):
    def load(**env):
        for key in _ENV_KEYS:
            monkeypatch.delenv(key, raising=False)
        for key, value in env.items():
            monkeypatch.setenv(key, value)
        sys.modules.pop("wsf_proxy", None)
        import wsf_proxy
        return importlib.reload(wsf_proxy)

    return load
