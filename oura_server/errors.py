from typing import Any, Dict, Optional

from flask import jsonify


class OuraProxyError(Exception):
    """Base for every failure the proxy endpoint reports as a JSON error body."""

    status_code = 500

    def __init__(self, message: str, detail: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail
        if status_code is not None:
            self.status_code = int(status_code)

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message}
        if self.detail is not None:
            body["detail"] = self.detail
        return body


class ConfigurationError(OuraProxyError):
    # Operator has to fix the deployment; never retried.
    status_code = 500


class ValidationError(OuraProxyError):
    status_code = 400


class UpstreamError(OuraProxyError):
    """Non-2xx from the Oura API. Carries the upstream status and body."""

    def __init__(self, message: str, status_code: int, detail: Optional[str] = None):
        super().__init__(message, detail=detail, status_code=status_code)


class InternalError(OuraProxyError):
    status_code = 500


def register_error_handlers(app):
    @app.errorhandler(OuraProxyError)
    def _handle_proxy_error(err):
        return jsonify(err.to_dict()), err.status_code
