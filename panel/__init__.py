# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""HTTP control panel over an in-process supervisor."""

from __future__ import annotations

import logging
import threading

from flask import Flask

from .routes import bp

logger = logging.getLogger(__name__)


def create_app(supervisor=None) -> Flask:
    """Create the panel app bound to ``supervisor``."""
    app = Flask(__name__)
    app.config["SUPERVISOR"] = supervisor
    app.register_blueprint(bp)
    return app


def start_panel(app: Flask, *, host: str = "0.0.0.0", port: int = 8000) -> threading.Thread:
    """Serve ``app`` from a daemon thread."""
    thread = threading.Thread(
        target=app.run,
        kwargs={"host": host, "port": port, "debug": False, "use_reloader": False},
        daemon=True,
        name="panel",
    )
    thread.start()
    logger.debug("Panel thread started on %s:%d", host, port)
    return thread


__all__ = ["create_app", "start_panel"]
