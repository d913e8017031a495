"""Flask application factory."""
from __future__ import annotations

from typing import Any, Callable, Mapping

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException


def _api_error_response(exc: HTTPException):
    """Render routing errors under ``/api/`` as JSON like the sync routes do."""

    if not request.path.startswith('/api/'):
        return exc
    return jsonify({'error': exc.description or exc.name}), exc.code


def create_app(
    flask_app: Flask | None = None,
    *,
    configure_blueprints: Callable[[Flask], None] | None = None,
    config_overrides: Mapping[str, Any] | None = None,
) -> Flask:
    """Return the application with its blueprints registered.

    Without ``flask_app`` or ``configure_blueprints`` the defaults from
    :mod:`app` are used.
    """
    if flask_app is None or configure_blueprints is None:
        from app import app as default_app, configure_blueprints as default_configure

        flask_app = flask_app or default_app
        configure_blueprints = configure_blueprints or default_configure

    if config_overrides:
        flask_app.config.update(config_overrides)

    for status in (404, 405):
        flask_app.register_error_handler(status, _api_error_response)

    configure_blueprints(flask_app)
    return flask_app
