from __future__ import annotations

import json
import os
import ssl
from functools import lru_cache
from typing import Any
from urllib.request import Request, urlopen

import certifi

USER_AGENT = "bond-keeper/0.1"


def _resolve_ca_bundle() -> tuple[str | None, str | None]:
    env_cafile = os.getenv("SSL_CERT_FILE")
    if env_cafile:
        return env_cafile, None

    env_capath = os.getenv("SSL_CERT_DIR")
    if env_capath:
        return None, env_capath

    return certifi.where(), None


@lru_cache(maxsize=1)
def _ssl_context() -> ssl.SSLContext:
    cafile, capath = _resolve_ca_bundle()
    if cafile:
        return ssl.create_default_context(cafile=cafile)
    if capath:
        return ssl.create_default_context(capath=capath)
    return ssl.create_default_context()


def post_json(url: str, payload: dict[str, Any], timeout: float = 10.0) -> int:
    body = json.dumps(payload).encode("utf-8")
    request = Request(
        url,
        data=body,
        method="POST",
        headers={"User-Agent": USER_AGENT, "Content-Type": "application/json"},
    )
    with urlopen(request, timeout=timeout, context=_ssl_context()) as response:
        response.read()
        return int(response.status)
