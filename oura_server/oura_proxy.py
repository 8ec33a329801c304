import logging
import re
from datetime import date

from flask import Blueprint, current_app, jsonify, request

from .errors import ConfigurationError, InternalError, OuraProxyError, ValidationError
from .oura_client import OuraClient

logger = logging.getLogger("oura-dashboard.proxy")

oura_bp = Blueprint("oura", __name__)

_DAY_RE = re.compile(r"\d{4}-\d{2}-\d{2}")


def _parse_day(name: str, value: str) -> date:
    try:
        if not _DAY_RE.fullmatch(value):
            raise ValueError(value)
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(
            "start/end query required (YYYY-MM-DD)",
            detail=f"'{name}' is not a YYYY-MM-DD date: {value!r}",
        )


def validate_range(start, end):
    """Check the ``start``/``end`` query values and return them unchanged."""
    if not start or not end:
        raise ValidationError("start/end query required (YYYY-MM-DD)")
    if _parse_day("start", start) > _parse_day("end", end):
        raise ValidationError(
            "start/end query required (YYYY-MM-DD)",
            detail=f"start {start} is after end {end}",
        )
    return start, end


def fetch_sleep_payload(client: OuraClient, start, end) -> dict:
    """Everything the endpoint does short of building the HTTP response."""
    if not client.access_token:
        raise ConfigurationError("Missing OURA token")
    start, end = validate_range(start, end)
    logger.info(f"Fetching Oura sleep range {start}..{end}")
    return client.fetch_range(start, end)


def get_oura_client() -> OuraClient:
    cfg = current_app.config
    return OuraClient(
        cfg.get("OURA_ACCESS_TOKEN"),
        base_url=cfg.get("OURA_API_BASE"),
        timeout=cfg.get("HTTP_TIMEOUT_SECONDS"),
    )


# ---------- Sleep range proxy ----------

@oura_bp.route("/api/oura/sleep", methods=["GET"])
def oura_sleep():
    # ?start=YYYY-MM-DD&end=YYYY-MM-DD
    try:
        payload = fetch_sleep_payload(get_oura_client(), request.args.get("start"), request.args.get("end"))
        return jsonify(payload), 200
    except OuraProxyError:
        raise
    except Exception as e:
        logger.error("/api/oura/sleep failed", exc_info=True)
        raise InternalError("Unexpected error", detail=str(e)) from e
