"""
lumina.api.__main__ — Entry point for ``python -m lumina.api``
===============================================================

Serves the referrals API with uvicorn on the ``api_port`` from
``config.yaml``.  Forwarded headers are resolved by
:func:`lumina.api.deps.client_ip` against ``TRUSTED_PROXIES``, so
uvicorn's own proxy-header handling is switched off.

Run with::

    python -m lumina.api
"""

from __future__ import annotations

import logging
import os

import uvicorn

from lumina.api.deps import get_config
from lumina.api.main import app

logger = logging.getLogger("lumina")


def main() -> None:
    """Serve the Lumina referrals API."""
    cfg = get_config()
    host = os.getenv("API_HOST", "127.0.0.1")
    logger.info("Serving %s referrals API on %s:%d", cfg.platform_name, host, cfg.api_port)
    uvicorn.run(app, host=host, port=cfg.api_port, proxy_headers=False)


if __name__ == "__main__":
    main()
